import threading

from vnc_protection.address import validate_address


class AttemptTracker:
    """
    In-memory failure counters per address. Counts are bookkeeping only;
    deciding when a count is high enough to ban belongs to the caller.
    Nothing here survives a restart.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = {}

    def record_failure(self, address):
        address = validate_address(address)
        with self._lock:
            self._counts[address] = self._counts.get(address, 0) + 1
            return self._counts[address]

    def clear(self, address):
        address = validate_address(address)
        with self._lock:
            return self._counts.pop(address, 0)

    def count(self, address):
        address = validate_address(address)
        with self._lock:
            return self._counts.get(address, 0)

    def __len__(self):
        with self._lock:
            return len(self._counts)
