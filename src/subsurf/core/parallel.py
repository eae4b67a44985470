"""
Global reductions across partitions.

Runs are single-process; the communicator is the seam where an MPI-backed
implementation would plug in. Every reduction blocks until all ranks answer.
"""
import numpy as np


class SerialCommunicator:
    """Communicator for a single partition: every reduction is the identity."""

    size: int = 1
    rank: int = 0

    def max_all(self, value: float) -> float:
        return float(value)

    def min_all(self, value: float) -> float:
        return float(value)

    def sum_all(self, value: float) -> float:
        return float(value)

    def max_loc(self, values: np.ndarray) -> tuple:
        """Global (value, index) of the maximum of a local array."""
        if values.size == 0:
            return -np.inf, -1
        idx = int(np.argmax(values))
        return float(values[idx]), idx

    def min_loc(self, values: np.ndarray) -> tuple:
        """Global (value, index) of the minimum of a local array."""
        if values.size == 0:
            return np.inf, -1
        idx = int(np.argmin(values))
        return float(values[idx]), idx


_default_comm = SerialCommunicator()


def get_comm() -> SerialCommunicator:
    """Default communicator shared by components built without one."""
    return _default_comm
