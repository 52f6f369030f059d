import logging
import os
import threading
from enum import Enum

from vnc_protection.address import find_addresses
from vnc_protection.errors import SourceUnavailableError, VncProtectionError

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURES = ("authentication failed",)


class MonitorState(Enum):
    WAITING_FOR_DATA = "waiting_for_data"
    LINE_AVAILABLE = "line_available"
    MATCH = "match"
    NO_MATCH = "no_match"
    STOPPED = "stopped"


def _decode(data):
    return data.rstrip(b"\r\n").decode("utf-8", errors="replace")


class LogTail:
    """
    Follow a growing text file, yielding complete lines as they are written.

    Starts at the current end of the file: history is not replayed. On
    rotation (new inode or removed) the old handle is read to its end, then
    the new file is opened from its beginning. A truncated file is rewound.
    When the file cannot be opened the tail waits with exponential backoff
    instead of giving up. Iteration ends only when `stop_event` is set.
    """

    def __init__(self, path, stop_event=None, poll_interval=0.5, backoff_initial=1.0, backoff_max=30.0):
        self.path = path
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.poll_interval = poll_interval
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._handle = None
        self._inode = None
        self._partial = b""
        self._started = False

    def __repr__(self):
        return f"LogTail({self.path})"

    def __iter__(self):
        if self._started:
            raise RuntimeError("LogTail can only be iterated once")
        self._started = True
        return self._follow()

    def stop(self):
        self.stop_event.set()

    def open(self, from_start=False):
        try:
            handle = open(self.path, "rb")
        except OSError as e:
            raise SourceUnavailableError(f"cannot open {self.path}: {e}") from e
        try:
            st = os.fstat(handle.fileno())
            if not from_start:
                handle.seek(st.st_size)
        except OSError as e:
            handle.close()
            raise SourceUnavailableError(f"cannot stat {self.path}: {e}") from e
        self.close()
        self._handle = handle
        self._inode = st.st_ino
        self._partial = b""
        logger.info(f"open(): following {self.path} from {'start' if from_start else 'end'} pos={handle.tell()}")

    def close(self):
        if self._handle is not None:
            self._handle.close()
        self._handle = None

    def _open_with_retry(self, from_start):
        delay = self.backoff_initial
        while not self.stop_event.is_set():
            try:
                self.open(from_start=from_start)
                return True
            except SourceUnavailableError as e:
                logger.warning(f"_open_with_retry(): {e}; retrying in {delay:.1f}s")
            # a file that shows up later is new activity from its first line
            from_start = True
            if self.stop_event.wait(delay):
                break
            delay = min(delay * 2, self.backoff_max)
        return False

    def _source_replaced(self):
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            logger.warning(f"_source_replaced(): {self.path} disappeared")
            return True
        except OSError as e:
            logger.warning(f"_source_replaced(): cannot stat {self.path}: {e}")
            return False
        if st.st_ino != self._inode:
            logger.info(f"_source_replaced(): rotation detected (inode) on {self.path}")
            return True
        if st.st_size < self._handle.tell():
            logger.info(f"_source_replaced(): truncation detected on {self.path}")
            self._handle.seek(0)
            self._partial = b""
        return False

    def _drain(self):
        # lines written to the old file between the last read and the rotation check
        for chunk in iter(self._handle.readline, b""):
            data = self._partial + chunk
            self._partial = b""
            if not chunk.endswith(b"\n"):
                self._partial = data
                continue
            yield _decode(data)
        if self._partial:
            # the old file will never finish this line
            yield _decode(self._partial)
            self._partial = b""

    def _follow(self):
        try:
            if self._handle is None and not self._open_with_retry(from_start=False):
                return
            while not self.stop_event.is_set():
                chunk = self._handle.readline()
                if chunk:
                    if not chunk.endswith(b"\n"):
                        self._partial += chunk
                        continue
                    data = self._partial + chunk
                    self._partial = b""
                    yield _decode(data)
                    continue
                if self._source_replaced():
                    yield from self._drain()
                    self.close()
                    if not self._open_with_retry(from_start=True):
                        return
                    continue
                if self.stop_event.wait(self.poll_interval):
                    return
        finally:
            self.close()


class FailureParser:
    def __init__(self, signatures=DEFAULT_SIGNATURES):
        self.signatures = [s for s in signatures if s]
        if not self.signatures:
            raise ValueError("at least one failure signature is required")

    def __repr__(self):
        return f"FailureParser({self.signatures})"

    def matches(self, line):
        return any(signature in line for signature in self.signatures)

    def parse_line(self, line):
        if not self.matches(line):
            return None
        addresses = find_addresses(line)
        if not addresses:
            logger.warning(f"parse_line(): failure line without an IPv4 address, skipping: {line!r}")
            return None
        return addresses[0]


class LogMonitor:
    """
    Drives the engine from a line source.

    Per line: WAITING_FOR_DATA -> LINE_AVAILABLE -> MATCH | NO_MATCH ->
    WAITING_FOR_DATA. A failure line's address is handed to
    `engine.on_failure_observed` unless it is allow-listed. Errors from one
    line are logged and the loop moves on to the next.
    """

    def __init__(self, engine, lines, parser=None):
        self.engine = engine
        self.lines = lines
        self.parser = parser if parser is not None else FailureParser()
        self.state = MonitorState.WAITING_FOR_DATA
        self.processed = 0

    def handle_line(self, line):
        self.state = MonitorState.LINE_AVAILABLE
        try:
            address = self.parser.parse_line(line)
            if address is None:
                self.state = MonitorState.NO_MATCH
                return None
            self.state = MonitorState.MATCH
            if self.engine.is_allowed(address):
                logger.debug(f"handle_line(): {address} is allowed, skipping")
                return None
            verdict = self.engine.on_failure_observed(address)
            logger.info(f"handle_line(): failure from {address}: {verdict.value}")
            return verdict
        except VncProtectionError as e:
            logger.error(f"handle_line(): could not handle line {line!r}: {e}")
            return None
        finally:
            self.processed += 1
            self.state = MonitorState.WAITING_FOR_DATA

    def run(self):
        logger.info(f"run(): monitoring with {self.parser}")
        try:
            for line in self.lines:
                self.handle_line(line)
        finally:
            self.state = MonitorState.STOPPED
            logger.info(f"run(): stopped after {self.processed} lines")
        return self.processed
