import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from enum import Enum

from vnc_protection.address import validate_address
from vnc_protection.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class ListName(Enum):
    ALLOWED = "allowed"
    DENIED = "denied"

    @property
    def other(self):
        return ListName.DENIED if self is ListName.ALLOWED else ListName.ALLOWED


class Outcome(Enum):
    ADDED = "added"
    ALREADY_PRESENT = "already_present"
    REMOVED = "removed"
    NOT_PRESENT = "not_present"


def _signature(st):
    return (st.st_ino, st.st_size, st.st_mtime_ns)


def _file_signature(path):
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return _signature(st)


class ListStore:
    """
    Durable allow/deny address lists, one address per line.

    The two sets are kept disjoint: adding an address to one list removes it
    from the other before the change is written. Mutations are written
    synchronously and atomically (temp file, fsync, rename); the in-memory
    sets only change once every affected file has been written.
    """

    def __init__(self, allow_path, deny_path):
        self.paths = {ListName.ALLOWED: allow_path, ListName.DENIED: deny_path}
        # dicts used as insertion-ordered sets
        self._sets = {ListName.ALLOWED: {}, ListName.DENIED: {}}
        self._signatures = {ListName.ALLOWED: None, ListName.DENIED: None}
        self._lock = threading.RLock()
        self._loaded = False

    def load(self):
        with self._lock:
            loaded = {}
            for name in ListName:
                loaded[name] = self._read(name)
            for address in list(loaded[ListName.DENIED]):
                if address in loaded[ListName.ALLOWED]:
                    logger.warning(f"load(): {address} is in both lists, keeping it allowed only")
                    del loaded[ListName.DENIED][address]
            self._sets = loaded
            self._loaded = True
            logger.debug(
                f"load(): {len(loaded[ListName.ALLOWED])} allowed, {len(loaded[ListName.DENIED])} denied"
            )

    def refresh(self):
        """Reload from disk if either file changed since it was last read or written."""
        with self._lock:
            if not self._loaded:
                self.load()
                return True
            for name in ListName:
                if _file_signature(self.paths[name]) != self._signatures[name]:
                    logger.info(f"refresh(): {self.paths[name]} changed on disk, reloading lists")
                    self.load()
                    return True
            return False

    def contains(self, name, address):
        address = validate_address(address)
        with self._lock:
            self._ensure_loaded()
            return address in self._sets[name]

    def all(self, name):
        with self._lock:
            self._ensure_loaded()
            return list(self._sets[name])

    def add(self, name, address):
        address = validate_address(address)
        with self._lock:
            self._ensure_loaded()
            other = name.other
            if address in self._sets[name] and address not in self._sets[other]:
                return Outcome.ALREADY_PRESENT
            staged = {
                name: dict(self._sets[name]),
                other: dict(self._sets[other]),
            }
            changed = []
            if address in staged[other]:
                del staged[other][address]
                changed.append(other)
            if address not in staged[name]:
                staged[name][address] = None
                changed.append(name)
                outcome = Outcome.ADDED
            else:
                outcome = Outcome.ALREADY_PRESENT
            self._commit(staged, changed)
            return outcome

    def remove(self, name, address):
        address = validate_address(address)
        with self._lock:
            self._ensure_loaded()
            if address not in self._sets[name]:
                return Outcome.NOT_PRESENT
            staged = {name: dict(self._sets[name])}
            del staged[name][address]
            self._commit(staged, [name])
            return Outcome.REMOVED

    def _ensure_loaded(self):
        if not self._loaded:
            self.load()

    def _read(self, name):
        path = self.paths[name]
        entries = {}
        try:
            if not os.path.exists(path):
                self._write(path, [])
            with open(path, "r", encoding="utf-8") as f:
                # signature of the file actually read, not of whatever is at path now
                signature = _signature(os.fstat(f.fileno()))
                for lineno, line in enumerate(f, start=1):
                    text = line.strip()
                    if not text:
                        continue
                    try:
                        address = validate_address(text)
                    except ValidationError:
                        logger.warning(f"_read(): {path}:{lineno}: skipping invalid entry {text!r}")
                        continue
                    if address in entries:
                        logger.warning(f"_read(): {path}:{lineno}: skipping duplicate {address}")
                        continue
                    entries[address] = None
        except OSError as e:
            raise PersistenceError(f"cannot read {name.value} list {path}: {e}") from e
        self._signatures[name] = signature
        return entries

    def _commit(self, staged, changed):
        written = []
        try:
            for name in changed:
                self._write(self.paths[name], list(staged[name]))
                written.append(name)
        except OSError as e:
            for name in written:
                try:
                    self._write(self.paths[name], list(self._sets[name]))
                except OSError as rollback_error:
                    logger.error(f"_commit(): rollback of {self.paths[name]} failed: {rollback_error}")
            raise PersistenceError(f"cannot write {self.paths[changed[len(written)]]}: {e}") from e
        for name in changed:
            self._sets[name] = staged[name]
            self._signatures[name] = _file_signature(self.paths[name])

    @contextmanager
    def _replacement(self, path):
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=".vnc-protection.", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                yield tmp
                tmp.flush()
                os.fsync(tmp.fileno())
            try:
                mode = os.stat(path).st_mode & 0o7777
            except FileNotFoundError:
                mode = 0o644
            os.chmod(temp_path, mode)
            os.replace(temp_path, path)
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)

    def _write(self, path, addresses):
        with self._replacement(path) as f:
            for address in addresses:
                f.write(address + "\n")
