"""Base class for parallel processing of LD blocks."""

import ctypes
import logging
import time
from abc import ABC, abstractmethod
from multiprocessing import Array, Process, Value, cpu_count
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

ERROR_FLAG = -2
SHUTDOWN_FLAG = -1


class SharedData:
    """Wrapper for shared memory data structures.

    Attributes:
        _data_dict: Dictionary mapping keys to shared memory objects
    """

    def __init__(self, sizes: Dict[str, Union[int, None]]):
        """Initialize shared memory objects.

        Args:
            sizes: Dictionary mapping keys to array sizes.
                  If size is None, creates a shared float value.
        """
        self._data_dict = {}
        for key, size in sizes.items():
            if size is None:
                self._data_dict[key] = Value('d', 0.0)
            else:
                self._data_dict[key] = Array('d', max(size, 0))

    def __contains__(self, key: str) -> bool:
        return key in self._data_dict

    @staticmethod
    def _is_array(data) -> bool:
        # Synchronized Value and Array both have get_obj; only Array wraps a ctypes array
        return isinstance(data.get_obj(), ctypes.Array)

    def __getitem__(
        self, key: Union[str, Tuple[str, slice]]
    ) -> Union[np.ndarray, float]:
        """Get numpy array view or float value.

        Args:
            key: Key in data dictionary or tuple of (key, slice)

        Returns:
            numpy array view for Array, float for Value
        """
        if isinstance(key, tuple):
            array_key, slice_obj = key
            return self[array_key][slice_obj]

        data = self._data_dict[key]
        if self._is_array(data):
            return np.frombuffer(data.get_obj(), dtype=np.float64)
        return data.value

    def __setitem__(
        self,
        key: Union[str, Tuple[str, slice]],
        value: Union[np.ndarray, float]
    ):
        """Set array contents or float value.

        Args:
            key: Key in data dictionary or tuple of (key, slice)
            value: Array or float to set
        """
        if isinstance(key, tuple):
            array_key, slice_obj = key
            data = self._data_dict[array_key]
            if self._is_array(data):
                self[array_key][slice_obj] = value
            else:
                raise ValueError("Slice assignment only supported for Array types")
            return

        data = self._data_dict[key]
        if self._is_array(data):
            np.copyto(np.frombuffer(data.get_obj(), dtype=np.float64), value)
        else:
            data.value = float(value)


class SerialManager:
    """Manager for debugging by running workers in serial."""

    def __init__(self, num_processes: int):
        """Initialize worker manager.

        Args:
            num_processes: Number of workers to manage
        """
        self.flags = [Value('i', 0) for _ in range(num_processes)]
        self.functions: List[Callable] = []
        self.arguments: List[tuple] = []

    def start_workers(self, flag: Optional[int] = None) -> None:
        """Run every worker once.

        Args:
            flag: Optional flag value to set (default: 1)
        """
        for f in self.flags:
            f.value = flag or 1

        for func, args in zip(self.functions, self.arguments):
            func(*args)

        assert all([f.value == 0 for f in self.flags])

    def await_workers(self) -> None:
        pass

    def add_process(self, target: Callable, args: Tuple) -> None:
        """Add a worker.

        Args:
            target: Function to run
            args: Arguments to pass to function
        """
        self.functions.append(target)
        self.arguments.append(args)

    def shutdown(self) -> None:
        """Shutdown all worker processes."""
        pass


class WorkerManager:
    """Manager for coordinating parallel worker processes.

    Attributes:
        flags: List of shared flags for worker control
        processes: List of worker processes
    """

    def __init__(self, num_processes: int):
        """Initialize worker manager.

        Args:
            num_processes: Number of worker processes to manage
        """
        self.flags = [Value('i', 0) for _ in range(num_processes)]
        self.processes: List[Process] = []

    def start_workers(self, flag: Optional[int] = None) -> None:
        """Signal workers to start processing.

        Args:
            flag: Optional flag value to set (default: 1)
        """
        if flag is None:
            flag = 1
        for f in self.flags:
            f.value = flag

    def await_workers(self) -> None:
        """Wait for all workers to finish current task.

        Raises:
            RuntimeError: If a worker failed
        """
        while any(flag.value >= 1 for flag in self.flags):
            if any(flag.value == ERROR_FLAG for flag in self.flags):
                break
            time.sleep(0.01)

        if any(flag.value == ERROR_FLAG for flag in self.flags):
            self.shutdown()
            raise RuntimeError("A worker process failed; see the log for its traceback")

    def add_process(self, target: Callable, args: Tuple) -> None:
        """Add a worker process.

        Args:
            target: Function to run in process
            args: Arguments to pass to function
        """
        process = Process(target=target, args=args)
        process.start()
        self.processes.append(process)

    def shutdown(self) -> None:
        """Shutdown all worker processes."""
        # Signal shutdown
        for flag in self.flags:
            if flag.value != ERROR_FLAG:
                flag.value = SHUTDOWN_FLAG

        # Wait for processes to finish
        for process in self.processes:
            process.join()
        self.processes = []


class ParallelProcessor(ABC):
    """Abstract base class for parallel processing of LD blocks.

    Each worker owns a contiguous range of blocks, and block i writes its output to
    its own slot of the shared memory, so that results do not depend on how the
    blocks were divided among workers. Subclasses must implement the following methods:
        - create_shared_memory: Set up shared memory arrays
        - supervise: Monitor and control worker processes
        - process_block: Process a single block
    """

    @classmethod
    @abstractmethod
    def create_shared_memory(cls, blocks: list, block_data: list, **kwargs) -> SharedData:
        """Initialize shared memory and data structures.

        Args:
            blocks: List of blocks
            block_data: List of block-specific data
            **kwargs: Additional arguments passed from run()

        Returns:
            SharedData object containing shared memory arrays
        """
        pass

    @classmethod
    @abstractmethod
    def supervise(cls, manager: Union[WorkerManager, SerialManager],
                  shared_data: SharedData,
                  block_data: list, **kwargs) -> Any:
        """Monitor workers and process results.

        Args:
            manager: Worker manager for controlling processes
            shared_data: Shared memory data
            block_data: List of block-specific data
            **kwargs: Additional arguments passed from run()

        Returns:
            Results of the parallel computation
        """
        pass

    @classmethod
    @abstractmethod
    def process_block(cls, block: Any,
                      flag: Value,
                      shared_data: SharedData,
                      block_data: Any = None,
                      worker_params: Any = None) -> None:
        """Process single block.

        Args:
            block: The block to process
            flag: Worker flag
            shared_data: Dictionary-like shared data object
            block_data: Optional block-specific data from prepare_block_data
            worker_params: Optional parameters passed to each worker process

        Returns:
            None
        """
        pass

    @classmethod
    def prepare_block_data(cls, blocks: list, **kwargs) -> list:
        """Prepare data specific to each block for processing.

        This method should return a list of length equal to the number of blocks,
        where each element contains any block-specific data needed by process_block.
        The base implementation returns the position of each block.

        Args:
            blocks: List of blocks
            **kwargs: Additional arguments passed from run()

        Returns:
            List of block-specific data, length equal to number of blocks
        """
        return list(range(len(blocks)))

    @classmethod
    def worker(cls,
               blocks: list,
               block_data: list,
               flag: Value,
               shared_data: SharedData,
               worker_params: Any = None
               ) -> None:
        """Worker process that processes its blocks each time it is signalled.

        Args:
            blocks: List of blocks to process
            block_data: List of block-specific data
            flag: Shared flag for worker control
            shared_data: Shared memory data
            worker_params: Optional parameters passed to process_block
        """
        try:
            while True:
                # Wait for signal to start new iteration
                while flag.value == 0:
                    time.sleep(0.01)

                if flag.value < 0:  # shutdown signal
                    break

                starting_flag = flag.value
                for block, data in zip(blocks, block_data):
                    cls.process_block(block, flag, shared_data, data, worker_params)
                assert flag.value == starting_flag, "process_block should not change flag"
                # Signal completion
                flag.value = 0

        except Exception:
            logger.exception("Error in worker")
            flag.value = ERROR_FLAG

    @classmethod
    def serial_worker(cls,
                      blocks: list,
                      block_data: list,
                      flag: Value,
                      shared_data: SharedData,
                      worker_params: Any
                      ) -> None:
        """Processes blocks once in the calling process.

        Args:
            blocks: List of blocks to process
            block_data: List of block-specific data
            flag: Shared flag for worker control
            shared_data: Shared memory data
            worker_params: Optional parameters passed to process_block
        """
        if flag.value <= 0:
            raise ValueError("Serial worker should never be started with flag <= 0")

        for block, data in zip(blocks, block_data):
            cls.process_block(block, flag, shared_data, data, worker_params)

        # Signal completion
        flag.value = 0

    @classmethod
    def _split_blocks(cls,
                      block_sizes: np.ndarray,
                      num_processes: int
                      ) -> List[Tuple[int, int]]:
        """Divide LD blocks among workers for parallel processing. Attempts to
        split work evenly assuming that work is proportional to the size of each block

        Args:
            block_sizes: Number of nonzero entries of each block's precision matrix
            num_processes: Number of processes

        Returns:
            List of ranges of block indices for each process
        """
        size_cumsum = np.insert(np.cumsum(block_sizes), 0, 0)
        chunk_size = size_cumsum[-1] / num_processes

        # Find indices where cumsum crosses multiples of chunk_size
        block_indices = []
        for i in range(1, num_processes):
            target_sum = i * chunk_size
            idx = np.searchsorted(size_cumsum, target_sum)
            block_indices.append(idx)
        block_indices.append(len(size_cumsum) - 1)  # Add last index

        # Insert start index
        block_indices = np.array([0] + block_indices)

        return [
            (int(start), int(end))
            for start, end in zip(block_indices[:-1], block_indices[1:])
        ]

    @classmethod
    def run(cls,
            blocks: list,
            num_processes: Optional[int] = None,
            worker_params: Any = None,
            **kwargs) -> Any:
        """Run parallel computation.

        Args:
            blocks: List of blocks
            num_processes: Number of processes to use; None -> number of CPUs
            worker_params: Optional parameters passed to each worker process
            **kwargs: Additional arguments

        Returns:
            Results of the parallel computation
        """
        if not blocks:
            raise ValueError("No blocks to process")

        if num_processes is None:
            num_processes = cpu_count()
        num_processes = max(1, min(len(blocks), num_processes))

        # Split blocks among processes
        block_sizes = np.array([block.precision.nnz for block in blocks])
        process_block_ranges = cls._split_blocks(block_sizes, num_processes)
        process_blocks = [blocks[start:end] for start, end in process_block_ranges]

        # Data to be sent to each block individually
        block_data = cls.prepare_block_data(blocks, **kwargs)
        process_block_data = [block_data[start:end] for start, end in process_block_ranges]

        # Data shared among all blocks
        shared_data = cls.create_shared_memory(blocks, block_data, **kwargs)

        # Create worker manager
        manager = WorkerManager(num_processes)

        # Start workers
        for i in range(num_processes):
            manager.add_process(
                target=cls.worker,
                args=(
                    process_blocks[i],
                    process_block_data[i],
                    manager.flags[i],
                    shared_data,
                    worker_params,
                )
            )

        try:
            # Run supervisor process
            results = cls.supervise(manager, shared_data, block_data, **kwargs)
        finally:
            # Cleanup
            manager.shutdown()

        return results

    @classmethod
    def run_serial(cls,
                   blocks: list,
                   num_processes: Optional[int] = None,
                   worker_params: Any = None,
                   **kwargs) -> Any:
        """Run computation in serial, with the same semantics as run().

        Args:
            blocks: List of blocks
            num_processes: Not used
            worker_params: Optional parameters passed to each worker
            **kwargs: Additional arguments

        Returns:
            Results of the computation
        """
        if not blocks:
            raise ValueError("No blocks to process")

        # Data to be sent to each block individually
        block_data = cls.prepare_block_data(blocks, **kwargs)
        num_blocks = len(block_data)

        # Data shared among all blocks
        shared_data = cls.create_shared_memory(blocks, block_data, **kwargs)

        manager = SerialManager(num_blocks)

        # Start workers
        for i in range(num_blocks):
            manager.add_process(
                target=cls.serial_worker,
                args=(
                    blocks[i:i + 1],
                    block_data[i:i + 1],
                    manager.flags[i],
                    shared_data,
                    worker_params,
                )
            )

        # Run supervisor process
        results = cls.supervise(manager, shared_data, block_data, **kwargs)

        # Cleanup
        manager.shutdown()

        return results
