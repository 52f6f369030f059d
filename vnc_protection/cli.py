import argparse
import fcntl
import logging
import os
import signal
import sys
import threading

import sdnotify

from vnc_protection import __version__
from vnc_protection.config import load_config
from vnc_protection.engine import AccessControlEngine
from vnc_protection.errors import FilterCommandError, VncProtectionError
from vnc_protection.liststore import ListName, ListStore, Outcome
from vnc_protection.logs import setup_audit_log, setup_logging
from vnc_protection.monitor import FailureParser, LogMonitor, LogTail
from vnc_protection.rules import RuleEngine
from vnc_protection.tracker import AttemptTracker

logger = logging.getLogger(__name__)

MESSAGES = {
    ("allow", Outcome.ADDED): "IP {ip} has been added to the whitelist for VNC access.",
    ("allow", Outcome.ALREADY_PRESENT): "IP {ip} is already in the whitelist.",
    ("unallow", Outcome.REMOVED): "IP {ip} has been removed from the whitelist.",
    ("unallow", Outcome.NOT_PRESENT): "IP {ip} is not in the whitelist.",
    ("deny", Outcome.ADDED): "IP {ip} has been banned for VNC access.",
    ("deny", Outcome.ALREADY_PRESENT): "IP {ip} is already in the blacklist.",
    ("undeny", Outcome.REMOVED): "IP {ip} has been removed from the blacklist.",
    ("undeny", Outcome.NOT_PRESENT): "IP {ip} is not in the blacklist.",
}
# legacy command names kept as aliases
ADDRESS_COMMANDS = {
    "allow": ["whitelist"],
    "unallow": ["unwhitelist"],
    "deny": ["blacklist"],
    "undeny": ["unblacklist"],
}


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser():
    parser = ArgumentParser(prog="firewall-vnc", description="Protect a VNC port from repeated failed logins with iptables.")
    parser.add_argument("--config", help="path to the JSON config file")
    parser.add_argument("--dry-run", action="store_true", help="log iptables changes instead of applying them")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", metavar="command", parser_class=ArgumentParser)
    commands.required = True
    for name, aliases in ADDRESS_COMMANDS.items():
        sub = commands.add_parser(name, aliases=aliases, help=f"{name} an IPv4 address")
        sub.add_argument("address", help="IPv4 address")
        sub.set_defaults(command=name)
    commands.add_parser("show", help="print both lists and the live rules").set_defaults(command="show")
    commands.add_parser("monitor", help="watch the failure log and ban offenders").set_defaults(command="monitor")
    commands.add_parser(
        "reconcile", aliases=["apply-rules"], help="re-apply rules for every listed address"
    ).set_defaults(command="reconcile")
    commands.add_parser("check-rules", help="print the live rules for the protected port").set_defaults(command="check-rules")
    return parser


def build_engine(config):
    # loaded on first use, inside the engine lock
    store = ListStore(config["ALLOW_LIST"], config["DENY_LIST"])
    rules = RuleEngine(
        config["PROTECTED_PORT"],
        protocol=config["PROTOCOL"],
        chain=config["CHAIN"],
        iptables_path=config["IPTABLES_PATH"],
        timeout=config["COMMAND_TIMEOUT"],
        disarm=config["DISARM"],
    )
    return AccessControlEngine(
        store,
        rules,
        AttemptTracker(),
        max_attempts=config["MAX_ATTEMPTS"],
        lock_path=config["LOCK_FILE"] or None,
    )


def print_rules(engine):
    try:
        live, others = engine.rules.scan()
    except FilterCommandError as e:
        print(f"Could not list iptables rules: {e}", file=sys.stderr)
        return False
    print(f"Current iptables rules for VNC (port {engine.rules.port}):")
    for rule in live:
        print(f"{rule.position:>4}  {rule}")
    if not live:
        print("(none)")
    if others:
        print(f"Other rules matching port {engine.rules.port} (read-only, not managed by firewall-vnc):")
        for position, text in others:
            print(f"{position:>4}  {text}")
    return True


def command_address(engine, command, address):
    try:
        outcome = getattr(engine, command)(address)
    except FilterCommandError as e:
        print(
            f"IP {address}: list updated but iptables failed: {e}. Run 'firewall-vnc reconcile' to repair.",
            file=sys.stderr,
        )
        print_rules(engine)
        return 1
    print(MESSAGES[(command, outcome)].format(ip=address))
    return 0 if print_rules(engine) else 1


def command_show(engine):
    with engine.critical_section():
        allowed = engine.store.all(ListName.ALLOWED)
        denied = engine.store.all(ListName.DENIED)
    print("Whitelist (Allowed VNC access):")
    for address in allowed:
        print(address)
    print("")
    print("Blacklist (Banned from VNC access):")
    for address in denied:
        print(address)
    print("")
    return 0 if print_rules(engine) else 1


def command_reconcile(engine):
    print("Applying existing whitelist and blacklist rules for VNC...")
    report = engine.reconcile()
    for rule in report.applied:
        print(f"applied  {rule}")
    for rule in report.removed:
        print(f"removed  {rule}")
    if report.in_sync:
        print(f"VNC protection rules already in sync ({report.unchanged} in place).")
    else:
        print(
            f"VNC protection rules applied ({len(report.applied)} added, {len(report.removed)} removed, "
            f"{report.unchanged} already in place)."
        )
    return 0 if print_rules(engine) else 1


def acquire_single_instance_lock(path):
    lock_dir = os.path.dirname(os.path.abspath(path))
    os.makedirs(lock_dir, exist_ok=True)
    handle = open(path, "a+")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        return None
    handle.seek(0)
    handle.truncate()
    handle.write(str(os.getpid()))
    handle.flush()
    return handle


def release_single_instance_lock(handle):
    if handle is None:
        return
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


def run_monitor(config, engine, stop_event=None, notifier=None, install_signals=True):
    """
    Run the monitoring daemon until SIGINT/SIGTERM (or `stop_event`).

    Returns: exit code, 1 if another monitor holds the pid lock or the
    monitor thread died on its own.
    """
    stop_event = stop_event if stop_event is not None else threading.Event()
    notifier = notifier if notifier is not None else sdnotify.SystemdNotifier()
    pid_lock = acquire_single_instance_lock(config["PID_FILE"])
    if pid_lock is None:
        print(f"Another firewall-vnc monitor is already running (lock busy: {config['PID_FILE']}).", file=sys.stderr)
        return 1
    exitcode = 0
    try:
        if install_signals:
            def close_gracefully(signum, frame):
                logger.info(f"close_gracefully(): received signal {signum}, stopping")
                stop_event.set()
            signal.signal(signal.SIGINT, close_gracefully)
            signal.signal(signal.SIGTERM, close_gracefully)
        try:
            engine.reconcile()
        except FilterCommandError as e:
            logger.error(f"run_monitor(): startup reconcile failed, continuing to monitor: {e}")
        tail = LogTail(
            config["FAILURE_LOG"],
            stop_event=stop_event,
            poll_interval=config["POLL_INTERVAL"],
            backoff_initial=config["REOPEN_BACKOFF_INITIAL"],
            backoff_max=config["REOPEN_BACKOFF_MAX"],
        )
        monitor = LogMonitor(engine, tail, FailureParser(config["FAILURE_SIGNATURES"]))
        thread = threading.Thread(target=monitor.run, name="log-monitor", daemon=True)
        thread.start()
        notifier.notify("READY=1")
        notifier.notify(f"STATUS=Watching {config['FAILURE_LOG']} for port {config['PROTECTED_PORT']}")
        logger.info("run_monitor(): READY signal sent to systemd.")
        while not stop_event.wait(config["WATCHDOG_INTERVAL"]):
            if not thread.is_alive():
                logger.error("run_monitor(): monitor thread exited unexpectedly")
                exitcode = 1
                break
            notifier.notify("WATCHDOG=1")
        notifier.notify("STOPPING=1")
        logger.info("run_monitor(): shutting down...")
        stop_event.set()
        thread.join(timeout=max(5.0, config["POLL_INTERVAL"] * 4))
    finally:
        release_single_instance_lock(pid_lock)
    return exitcode


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except VncProtectionError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    if args.dry_run:
        config["DISARM"] = True
    try:
        setup_logging(config["LOGFILE"], config["DEBUG_PRINT"], config["LOG_LEVEL"])
        setup_audit_log(config["AUDIT_LOG"])
    except OSError as e:
        print(f"Warning: file logging disabled: {e}", file=sys.stderr)
        setup_logging("", config["DEBUG_PRINT"], config["LOG_LEVEL"])
        setup_audit_log("")
    if not config["CONFIG_FOUND"]:
        logger.warning(f"main(): config file not found, using defaults: {config['CONFIG_PATH']}")
    try:
        engine = build_engine(config)
        if args.command in ADDRESS_COMMANDS:
            return command_address(engine, args.command, args.address)
        if args.command == "show":
            return command_show(engine)
        if args.command == "reconcile":
            return command_reconcile(engine)
        if args.command == "check-rules":
            return 0 if print_rules(engine) else 1
        if args.command == "monitor":
            return run_monitor(config, engine)
    except VncProtectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())
