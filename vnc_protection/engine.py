import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from vnc_protection.address import validate_address
from vnc_protection.errors import FilterCommandError, PersistenceError
from vnc_protection.liststore import ListName, Outcome
from vnc_protection.logs import AUDIT_LOGGER
from vnc_protection.rules import Action
from vnc_protection.tracker import AttemptTracker

logger = logging.getLogger(__name__)


class Verdict(Enum):
    IGNORED_ALLOWED = "ignored_allowed"
    ALREADY_DENIED = "already_denied"
    RECORDED = "recorded"
    DENIED = "denied"


@dataclass
class Snapshot:
    allowed: list = field(default_factory=list)
    denied: list = field(default_factory=list)
    live_rules: list = field(default_factory=list)


class AccessControlEngine:
    """
    Public operations over the allow/deny lists and the live filter rules.

    Every operation runs in one critical section covering "change the
    lists, then change the rules", shared with other processes through an
    flock on `lock_path` when one is given. A failed rule call never undoes
    a committed list change; `reconcile()` brings the rules back in line.
    """

    def __init__(self, store, rules, tracker=None, max_attempts=1, audit=None, lock_path=None):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.store = store
        self.rules = rules
        self.tracker = tracker if tracker is not None else AttemptTracker()
        self.max_attempts = max_attempts
        self.audit = audit if audit is not None else logging.getLogger(AUDIT_LOGGER)
        self.lock_path = lock_path
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def critical_section(self):
        with self._lock:
            lock_file = None
            if self.lock_path and self._depth == 0:
                try:
                    lock_dir = os.path.dirname(os.path.abspath(self.lock_path))
                    os.makedirs(lock_dir, exist_ok=True)
                    lock_file = open(self.lock_path, "a")
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                except OSError as e:
                    if lock_file is not None:
                        lock_file.close()
                    raise PersistenceError(f"cannot lock {self.lock_path}: {e}") from e
            self._depth += 1
            try:
                self.store.refresh()
                yield
            finally:
                self._depth -= 1
                if lock_file is not None:
                    try:
                        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                    finally:
                        lock_file.close()

    def allow(self, address):
        address = validate_address(address)
        with self.critical_section():
            outcome = self.store.add(ListName.ALLOWED, address)
            self.tracker.clear(address)
            if outcome is Outcome.ADDED:
                self.audit.info(f"Whitelisted {address} for VNC access")
            self._sync(address, apply=[Action.ACCEPT], revoke=[Action.DROP])
            return outcome

    def unallow(self, address):
        address = validate_address(address)
        with self.critical_section():
            outcome = self.store.remove(ListName.ALLOWED, address)
            if outcome is Outcome.REMOVED:
                self.audit.info(f"Removed {address} from whitelist for VNC access")
            self._sync(address, revoke=[Action.ACCEPT])
            return outcome

    def deny(self, address):
        address = validate_address(address)
        with self.critical_section():
            outcome = self.store.add(ListName.DENIED, address)
            self.tracker.clear(address)
            if outcome is Outcome.ADDED:
                self.audit.info(f"Blocked {address} for VNC access")
            self._sync(address, apply=[Action.DROP], revoke=[Action.ACCEPT])
            return outcome

    def undeny(self, address):
        address = validate_address(address)
        with self.critical_section():
            outcome = self.store.remove(ListName.DENIED, address)
            if outcome is Outcome.REMOVED:
                self.audit.info(f"Unbanned {address} for VNC access")
            self._sync(address, revoke=[Action.DROP])
            return outcome

    def is_allowed(self, address):
        with self.critical_section():
            return self.store.contains(ListName.ALLOWED, address)

    def on_failure_observed(self, address):
        address = validate_address(address)
        with self.critical_section():
            if self.store.contains(ListName.ALLOWED, address):
                logger.debug(f"on_failure_observed(): {address} is allowed, ignoring")
                return Verdict.IGNORED_ALLOWED
            if self.store.contains(ListName.DENIED, address):
                self.tracker.clear(address)
                try:
                    if self.rules.apply(address, Action.DROP):
                        logger.warning(f"on_failure_observed(): restored missing DROP rule for {address}")
                except FilterCommandError as e:
                    self._rule_failure(address, e)
                return Verdict.ALREADY_DENIED
            count = self.tracker.record_failure(address)
            if count >= self.max_attempts:
                logger.info(f"on_failure_observed(): {address} reached {count}/{self.max_attempts} attempts, banning")
                try:
                    self.deny(address)
                except FilterCommandError as e:
                    self._rule_failure(address, e)
                return Verdict.DENIED
            self.audit.info(f"Failed attempt from {address} (Attempt {count})")
            return Verdict.RECORDED

    def reconcile(self):
        with self.critical_section():
            return self.rules.reconcile(self.store)

    def inspect(self):
        with self.critical_section():
            return Snapshot(
                allowed=self.store.all(ListName.ALLOWED),
                denied=self.store.all(ListName.DENIED),
                live_rules=self.rules.list(),
            )

    def _sync(self, address, apply=(), revoke=()):
        first_error = None
        steps = [(self.rules.apply, action) for action in apply] + [(self.rules.revoke, action) for action in revoke]
        for step, action in steps:
            try:
                step(address, action)
            except FilterCommandError as e:
                logger.error(f"_sync(): {step.__name__} {action.value} for {address} failed: {e}")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def _rule_failure(self, address, error):
        logger.error(f"on_failure_observed(): could not apply rule for {address}, run reconcile to repair: {error}")
        self.audit.info(f"Failed to apply rule for {address}: {error}")
