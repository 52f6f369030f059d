import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from vnc_protection.address import validate_address
from vnc_protection.errors import FilterCommandError, ValidationError
from vnc_protection.liststore import ListName

logger = logging.getLogger(__name__)


class Action(Enum):
    ACCEPT = "ACCEPT"
    DROP = "DROP"

    @property
    def opposite(self):
        return Action.DROP if self is Action.ACCEPT else Action.ACCEPT


LIST_ACTIONS = {ListName.ALLOWED: Action.ACCEPT, ListName.DENIED: Action.DROP}


@dataclass(frozen=True)
class FilterRule:
    address: str
    port: int
    action: Action
    protocol: str = "tcp"
    position: Optional[int] = field(default=None, compare=False)

    def __str__(self):
        return f"{self.action.value:<7} {self.protocol} {self.address:<15} dpt:{self.port}"


@dataclass
class ReconcileReport:
    applied: list = field(default_factory=list)
    removed: list = field(default_factory=list)
    unchanged: int = 0

    @property
    def in_sync(self):
        return not self.applied and not self.removed


def run_command(args, timeout=None):
    return subprocess.run(args, capture_output=True, text=True, timeout=timeout, check=False)


class RuleEngine:
    """
    Thin client over the kernel's iptables INPUT chain for one protected port.

    The live table is shared with everything else on the host, so every
    mutating call lists the chain first and only acts when the rule is not
    already in the wanted state. Only rules of the exact shape this class
    inserts are recognised; everything else in the chain is left alone.
    """

    def __init__(self, port, protocol="tcp", chain="INPUT", iptables_path="iptables", timeout=10, disarm=False, runner=None):
        self.port = int(port)
        self.protocol = protocol.lower()
        self.chain = chain
        self.iptables_path = iptables_path
        self.timeout = timeout
        self.disarm = disarm
        self.runner = runner or run_command

    def __repr__(self):
        return f"RuleEngine(chain={self.chain}, port={self.port}/{self.protocol}, disarm={self.disarm})"

    def list(self):
        return self.scan()[0]

    def scan(self):
        """
        Read the chain once.

        Returns: (rules, others) where `rules` are the FilterRules this class
        manages and `others` are (position, rule text) pairs for every other
        rule that matches the protected port. `others` are never modified.
        """
        output = self._run(["-S", self.chain], mutating=False)
        rules = []
        others = []
        position = 0
        for line in output.splitlines():
            tokens = line.split()
            if len(tokens) < 2 or tokens[0] != "-A" or tokens[1] != self.chain:
                continue
            position += 1
            rule = self._parse_rule(tokens[2:], position)
            if rule is not None:
                rules.append(rule)
            elif self._mentions_port(tokens[2:]):
                others.append((position, " ".join(tokens[2:])))
        return rules, others

    def apply(self, address, action):
        """
        Insert `action` for `address` at the head of the chain.

        Returns: True if a rule was inserted, False if it was already live.
        """
        address = validate_address(address)
        if self._matching(self.list(), address, action):
            logger.debug(f"apply(): {action.value} rule for {address} already present")
            return False
        self._insert(address, action)
        return True

    def revoke(self, address, action):
        address = validate_address(address)
        matches = self._matching(self.list(), address, action)
        if not matches:
            logger.debug(f"revoke(): no {action.value} rule for {address}")
            return False
        for _ in matches:
            self._delete(address, action)
        return True

    def reconcile(self, store):
        report = ReconcileReport()
        live = self.list()
        for name, action in LIST_ACTIONS.items():
            for address in store.all(name):
                current = self._matching(live, address, action)
                if not current:
                    self._insert(address, action)
                    report.applied.append(FilterRule(address, self.port, action, self.protocol))
                else:
                    report.unchanged += 1
                    for duplicate in current[1:]:
                        self._delete(address, action)
                        report.removed.append(duplicate)
                for stale in self._matching(live, address, action.opposite):
                    self._delete(address, action.opposite)
                    report.removed.append(stale)
        logger.info(
            f"reconcile(): applied={len(report.applied)}, removed={len(report.removed)}, unchanged={report.unchanged}"
        )
        return report

    def _matching(self, rules, address, action):
        return [rule for rule in rules if rule.address == address and rule.action is action]

    def _rule_spec(self, address, action):
        return ["-s", address, "-p", self.protocol, "--dport", str(self.port), "-j", action.value]

    def _insert(self, address, action):
        self._run(["-I", self.chain, "1"] + self._rule_spec(address, action))
        logger.info(f"_insert(): {action.value} {address} on port {self.port}/{self.protocol}")

    def _delete(self, address, action):
        self._run(["-D", self.chain] + self._rule_spec(address, action))
        logger.info(f"_delete(): {action.value} {address} on port {self.port}/{self.protocol}")

    def _mentions_port(self, tokens):
        for flag, value in zip(tokens, tokens[1:]):
            if flag not in ("--dport", "--dports", "--destination-port", "--destination-ports"):
                continue
            for part in value.split(","):
                low, sep, high = part.partition(":")
                try:
                    if not sep and int(low) == self.port:
                        return True
                    if sep and int(low or 0) <= self.port <= int(high or 65535):
                        return True
                except ValueError:
                    continue
        return False

    def _parse_rule(self, tokens, position):
        options = {}
        i = 0
        while i < len(tokens):
            flag = tokens[i]
            if flag not in ("-s", "-p", "-m", "--dport", "-j") or i + 1 >= len(tokens):
                return None
            options.setdefault(flag, tokens[i + 1])
            i += 2
        source = options.get("-s", "")
        if source.endswith("/32"):
            source = source[:-3]
        try:
            address = validate_address(source)
        except ValidationError:
            return None
        if options.get("-p") != self.protocol or options.get("--dport") != str(self.port):
            return None
        if options.get("-m", self.protocol) != self.protocol:
            return None
        try:
            action = Action(options.get("-j"))
        except ValueError:
            return None
        return FilterRule(address, self.port, action, self.protocol, position)

    def _run(self, args, mutating=True):
        command = [self.iptables_path, "-w"] + args
        if mutating and self.disarm:
            logger.warning(f"_run(): DISARMED, but told to run: {' '.join(command)}")
            return ""
        try:
            result = self.runner(command, timeout=self.timeout)
        except FileNotFoundError as e:
            raise FilterCommandError(f"iptables not found: {self.iptables_path}", command) from e
        except subprocess.TimeoutExpired as e:
            raise FilterCommandError(f"timed out after {self.timeout}s: {' '.join(command)}", command) from e
        except OSError as e:
            raise FilterCommandError(f"cannot run {' '.join(command)}: {e}", command) from e
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.error(f"_run(): command failed with exit code {result.returncode}: {' '.join(command)}")
            if stderr:
                logger.error(f"_run(): stderr: {stderr}")
            raise FilterCommandError(
                f"{' '.join(command)} exited with {result.returncode}: {stderr}",
                command,
                result.returncode,
                stderr
            )
        return result.stdout or ""
