import logging
import subprocess

import pytest

from vnc_protection.engine import AccessControlEngine
from vnc_protection.liststore import ListStore
from vnc_protection.logs import AUDIT_LOGGER, PACKAGE_LOGGER
from vnc_protection.rules import RuleEngine
from vnc_protection.tracker import AttemptTracker

PORT = 9901


class FakeIptables:
    """In-memory INPUT chain answering the -S/-I/-D calls RuleEngine makes."""

    def __init__(self, chain="INPUT"):
        self.chain_name = chain
        self.chain = []
        self.calls = []
        self.fail = set()

    def __call__(self, command, timeout=None):
        self.calls.append(command)
        args = command[2:] if command[1:2] == ["-w"] else command[1:]
        op = args[0]
        if op in self.fail:
            return subprocess.CompletedProcess(command, 4, "", f"iptables: simulated {op} failure")
        if op == "-S":
            lines = [f"-P {args[1]} ACCEPT"] + [f"-A {args[1]} {rule}" for rule in self.chain]
            return subprocess.CompletedProcess(command, 0, "\n".join(lines) + "\n", "")
        if op == "-I":
            self.chain.insert(int(args[2]) - 1, self.spec(args[3:]))
        elif op == "-D":
            spec = self.spec(args[2:])
            if spec not in self.chain:
                return subprocess.CompletedProcess(
                    command, 1, "", "iptables: Bad rule (does a matching rule exist in that chain?)."
                )
            self.chain.remove(spec)
        return subprocess.CompletedProcess(command, 0, "", "")

    @staticmethod
    def spec(tokens):
        opts = dict(zip(tokens[::2], tokens[1::2]))
        return (
            f"-s {opts['-s']}/32 -p {opts['-p']} -m {opts['-p']} --dport {opts['--dport']} -j {opts['-j']}"
        )

    def add(self, address, action, port=PORT):
        self.chain.append(f"-s {address}/32 -p tcp -m tcp --dport {port} -j {action}")

    def actions(self, address, port=PORT):
        prefix = f"-s {address}/32 "
        return [rule.rsplit(" ", 1)[1] for rule in self.chain if rule.startswith(prefix) and f"--dport {port} " in rule]

    @property
    def mutations(self):
        return [call for call in self.calls if "-I" in call or "-D" in call]


class FakeAudit:
    def __init__(self):
        self.lines = []

    def info(self, message):
        self.lines.append(message)


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    for name in (PACKAGE_LOGGER, AUDIT_LOGGER):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)


@pytest.fixture
def iptables():
    return FakeIptables()


@pytest.fixture
def store(tmp_path):
    store = ListStore(str(tmp_path / "whitelist"), str(tmp_path / "blacklist"))
    store.load()
    return store


@pytest.fixture
def rules(iptables):
    return RuleEngine(PORT, runner=iptables)


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def engine(tmp_path, store, rules, audit):
    return AccessControlEngine(
        store, rules, AttemptTracker(), max_attempts=1, audit=audit, lock_path=str(tmp_path / "vnc.lock")
    )
