"""
Precision matrix operations for LD blocks.

This module implements sparse precision matrix operations using scipy's LinearOperator
interface. Indexing a PrecisionOperator with a subset of its rows yields the Schur
complement onto that subset, which is the inverse of the corresponding submatrix of
the correlation matrix.
"""

from dataclasses import dataclass
from functools import cached_property
from typing import Optional, Tuple, Union

import numpy as np
from scipy.sparse import csc_matrix
from scipy.sparse.linalg import LinearOperator
from sksparse.cholmod import Factor, cholesky


@dataclass
class PrecisionOperator(LinearOperator):
    """
    Sparse precision matrix implementing the LinearOperator interface.

    Attributes:
        _matrix: The precision matrix in sparse format
        _which_indices: Array of indices for current selection; None selects all rows
        _solver: Previously computed Cholesky factorization
        _cholesky_is_up_to_date: Flag indicating whether the Cholesky factorization is up to date
    """
    _matrix: csc_matrix
    _which_indices: Optional[np.ndarray] = None
    _solver: Optional[Factor] = None
    _cholesky_is_up_to_date: bool = False

    def __post_init__(self):
        self._matrix = csc_matrix(self._matrix, dtype=np.float64)
        self._matrix.sum_duplicates()
        self._matrix.sort_indices()
        if self._matrix.shape[0] != self._matrix.shape[1]:
            raise ValueError(f"Precision matrix must be square, got shape {self._matrix.shape}")
        if self._which_indices is not None:
            self.set_which_indices(self._which_indices)

    @property
    def shape(self):
        """Get the shape of the matrix, accounting for partial indexing."""
        if self._which_indices is not None:
            n = len(self._which_indices)
            return (n, n)
        return self._matrix.shape

    @property
    def dtype(self) -> np.dtype:
        """Return the dtype of the precision matrix."""
        return self._matrix.dtype

    @property
    def matrix(self):
        """Get the precision matrix."""
        return self._matrix

    @property
    def which_indices(self) -> Optional[np.ndarray]:
        return self._which_indices

    @cached_property
    def diagonal_indices(self) -> np.ndarray:
        """Get indices of diagonal elements corresponding to _which_indices in _matrix.data.

        Returns:
            Array of indices into self._matrix.data where diagonal elements are stored
        """
        diag_indices = np.empty(self._matrix.shape[0], dtype=np.int64)
        for i in range(self._matrix.shape[0]):
            start = self._matrix.indptr[i]
            end = self._matrix.indptr[i + 1]
            position = np.flatnonzero(self._matrix.indices[start:end] == i)
            if len(position) == 0:
                raise ValueError(f"Precision matrix has no stored diagonal entry in row {i}")
            diag_indices[i] = start + position[0]
        if self._which_indices is None:
            return diag_indices
        return diag_indices[self._which_indices]

    def times_scalar(self, multiplier: float) -> None:
        """Multiply the precision matrix by a scalar in place."""
        self._matrix = self._matrix * multiplier
        self.del_factor()

    def update_matrix(self, update: np.ndarray) -> None:
        """Update the precision matrix by adding values to its diagonal.

        If which_indices is set, only updates the corresponding diagonal elements.

        Args:
            update: Vector of values to add to the diagonal elements

        Raises:
            ValueError: If update shape doesn't match or would make diagonal non-positive
        """
        update = np.asarray(update, dtype=np.float64).ravel()
        if len(update) != self.shape[0]:
            msg = f"Update vector length {len(update)} does not match matrix shape {self.shape}"
            raise ValueError(msg)

        if not np.any(update):
            return

        self._matrix.data[self.diagonal_indices] += update

        if np.any(self._matrix.data[self.diagonal_indices] <= 0):
            raise ValueError("Update would make a diagonal element non-positive")

        self._cholesky_is_up_to_date = False

    def factor(self) -> None:
        """Update the Cholesky factorization of the precision matrix."""
        if self._solver is None:
            self._solver = cholesky(self._matrix)
        else:
            self._solver.cholesky_inplace(self._matrix)
        self._cholesky_is_up_to_date = True

    def del_factor(self) -> None:
        """Free the memory used by the Cholesky factorization."""
        self._solver = None
        self._cholesky_is_up_to_date = False

    def logdet(self) -> float:
        """Compute log determinant of the Schur complement.

        Returns:
            Log determinant of the Schur complement
        """
        if not self._cholesky_is_up_to_date:
            self.factor()

        mask = self._get_mask
        if np.all(mask):
            return self._solver.logdet()

        # logdet(P) - logdet(P11), P11 being the block of unselected indices
        P11 = self._matrix[~mask][:, ~mask]
        logdet_P11 = cholesky(csc_matrix(P11)).logdet()

        return self._solver.logdet() - logdet_P11

    @cached_property
    def _get_mask(self) -> np.ndarray:
        """Get boolean mask for current selection."""
        if self._which_indices is None:
            return np.ones(self._matrix.shape[0], dtype=bool)

        mask = np.zeros(self._matrix.shape[0], dtype=bool)
        mask[self._which_indices] = True
        return mask

    def _expand_vector(self, b: np.ndarray) -> np.ndarray:
        """Expand input vector to full size by padding with zeros.

        Args:
            b: Input vector

        Returns:
            Expanded vector

        Raises:
            ValueError: If input vector dimensions don't match matrix shape
        """
        b = np.asarray(b, dtype=np.float64)
        if b.ndim == 1:
            b = b.reshape(-1, 1)

        if self._which_indices is None:
            if b.shape[0] != self._matrix.shape[0]:
                msg = f"Input vector has shape {b.shape}, but matrix has shape {self._matrix.shape}"
                raise ValueError(msg)
            return b

        expected_size = len(self._which_indices)
        if b.shape[0] != expected_size:
            raise ValueError(f"Input vector has shape {b.shape}, but expected size {expected_size}")

        y = np.zeros((self._matrix.shape[0], b.shape[1]), dtype=np.float64)
        y[self._which_indices, :] = b
        return y

    def _matvec(self, x: np.ndarray) -> np.ndarray:
        """Schur complement matrix-vector multiplication.

        Args:
            x: Vector to multiply with precision matrix

        Returns:
            Result of matrix-vector multiplication
        """
        expected_size = self.shape[0]
        if x.shape[0] != expected_size:
            raise ValueError(f"Input vector has shape {x.shape}, but expected size {expected_size}")

        if self._which_indices is None:
            return self._matrix @ x

        # Schur complement (P/P11) * x
        x2d = x.reshape(x.shape[0], -1)
        mask = self._get_mask
        selected = self._which_indices
        first_term = self._matrix[selected][:, selected] @ x2d
        if np.all(mask):
            return first_term.reshape(x.shape)
        second_term = self._matrix[~mask][:, selected] @ x2d
        P11 = csc_matrix(self._matrix[~mask][:, ~mask])
        second_term = cholesky(P11)(second_term)
        second_term = self._matrix[selected][:, ~mask] @ second_term
        return (first_term - second_term).reshape(x.shape)

    def _matmat(self, X: np.ndarray) -> np.ndarray:
        return self._matvec(X)

    def _rmatvec(self, x: np.ndarray) -> np.ndarray:
        # Symmetric
        return self._matvec(x)

    def copy(self) -> 'PrecisionOperator':
        return PrecisionOperator(self._matrix.copy(), self._which_indices)

    def __getitem__(self, key: Union[list, slice, np.ndarray]) -> 'PrecisionOperator':
        """Returns a copy whose selection is restricted to key.

        Args:
            key: List or array of indices, boolean mask, or slice

        Returns:
            New PrecisionOperator with updated _which_indices
        """
        result = self.copy()
        result.set_which_indices(key)
        return result

    def set_which_indices(self, key: Union[list, slice, np.ndarray]) -> None:
        if isinstance(key, slice):
            indices = np.arange(self._matrix.shape[0])[key]
        elif isinstance(key, (list, np.ndarray)):
            key = np.asarray(key)
            if key.dtype == bool:
                indices = np.flatnonzero(key)
            else:
                indices = key.astype(np.int64)
        else:
            raise TypeError("Invalid key type. Use list, slice, or numpy array.")

        if len(np.unique(indices)) != len(indices):
            raise ValueError("Selected indices must be unique")

        # Selecting every row in order is the same as selecting nothing
        if np.array_equal(indices, np.arange(self._matrix.shape[0])):
            indices = None

        self._which_indices = indices
        self.__dict__.pop('_get_mask', None)
        self.__dict__.pop('diagonal_indices', None)

    def solve(self, b: np.ndarray) -> np.ndarray:
        """Solve the linear system Px = b, or (P/P11)x = b if indices are selected.

        Args:
            b: Right-hand side vector or matrix

        Returns:
            Solution vector x
        """
        b = np.asarray(b, dtype=np.float64)
        y = self._expand_vector(b)

        if not self._cholesky_is_up_to_date:
            self.factor()
        solution = self._solver(y)

        if self._which_indices is not None:
            solution = solution[self._which_indices, :]

        return solution.reshape(b.shape)

    def solve_Lt(self, b: np.ndarray) -> np.ndarray:
        """Solve L'x = b, where LL' is the permuted precision matrix, and undo the
        fill-reducing permutation. If b ~ MVN(0, I), then x ~ MVN(0, R).

        Args:
            b: Right-hand side vector over all rows of the precision matrix

        Returns:
            Solution vector x, restricted to the selected indices
        """
        if not self._cholesky_is_up_to_date:
            self.factor()

        b = np.asarray(b, dtype=np.float64)
        y = b.reshape(-1, 1) if b.ndim == 1 else b
        if y.shape[0] != self._matrix.shape[0]:
            raise ValueError(f"Input vector has shape {b.shape}, but matrix has shape {self._matrix.shape}")
        solution = self._solver.apply_Pt(self._solver.solve_Lt(y, use_LDLt_decomposition=False))

        if self._which_indices is not None:
            solution = solution[self._which_indices, :]
        return solution.ravel() if b.ndim == 1 else solution

    def inverse_diagonal(
        self,
        method: str = "exact",
        n_samples: int = 100,
        seed: Optional[int] = None,
    ) -> np.ndarray:
        """Compute the diagonal elements of the inverse of the precision matrix.

        Args:
            method: Method to use for computing diagonal elements
                ('exact', 'hutchinson', or 'xdiag')
            n_samples: Number of probe vectors for Hutchinson's method or xdiag
            seed: Random seed for generating probe vectors

        Returns:
            Array of diagonal elements of the inverse
        """
        if method not in ["exact", "hutchinson", "xdiag"]:
            raise ValueError(f"Unknown method: {method}")

        # Slow, exact inversion
        if method == "exact":
            dense_matrix = self._matrix.toarray()
            diag = np.diag(np.linalg.inv(dense_matrix))
            return diag if self._which_indices is None else diag[self._which_indices]

        # Rademacher probe vectors
        rng = np.random.RandomState(seed)
        v = rng.choice([-1.0, 1.0], size=(self.shape[0], min(self.shape[0], n_samples)))

        if method == "hutchinson":
            y = self.solve(v)
            return np.mean(v * y, axis=1)

        diag_estimate, _ = self._xdiag_estimator(v)
        return diag_estimate

    def _xdiag_estimator(self, v: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        r"""
        Compute diagonal elements of the inverse using the xdiag method
        described at https://arxiv.org/abs/2301.07825.

        Args:
            v: Matrix of probe vectors (should be Rademacher random variables)

        Returns:
            Tuple containing:
                - Array of diagonal elements of the inverse
                - P \ v
        """
        n, m = v.shape

        # Y = A @ v, A = inv(self)
        Y = self.solve(v)
        Q, R = np.linalg.qr(Y, mode='reduced')

        # Z = A @ Q
        Z = self.solve(Q)
        T = Z.T @ v

        # Column-normalize inverse of R transpose
        invR = np.linalg.inv(R).T
        S = invR / np.linalg.norm(invR, axis=0, keepdims=True)

        dQZ = np.sum(Q * Z, axis=1)
        dQSSZ = np.sum((Q @ S) * (Z @ S), axis=1)
        dOmQT = np.sum(v * (Q @ T), axis=1)
        dOmY = np.sum(v * Y, axis=1)
        ST_diag = np.sum(S * T, axis=1)
        dOmQSST = np.sum(v * (Q @ S @ np.diag(ST_diag)), axis=1)

        diag_est = dQZ + (-dQSSZ + dOmY - dOmQT + dOmQSST) / m

        return np.real(diag_est), Y
