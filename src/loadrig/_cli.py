"""
Command line interface.

Usage:
    loadrig run scenarios/rate_limit.json                  # Run a scenario
    loadrig run scenarios/smoke.json --out report.json     # ...and save the JSON report
    loadrig run scenarios/smoke.json --log-level DEBUG     # Verbose logging
    loadrig config                                         # Show harness settings and their sources

Exit codes:
    0   every threshold passed
    2   invalid scenario or settings
    3   run cancelled (Ctrl+C or fail-fast)
    99  at least one threshold failed
"""

import argparse
import logging
import signal
import threading
from pathlib import Path
from types import FrameType

from loadrig._config import LOADRIG, ConfigError
from loadrig._report import EXIT_CONFIG_ERROR, EXIT_OK
from loadrig._runner import LoadTestRun
from loadrig._scenario import load_scenario

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s | %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="loadrig",
        description="Run HTTP load test scenarios and evaluate pass/fail thresholds.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    loadrig run scenarios/rate_limit.json
    loadrig run scenarios/smoke.json --out report.json

Exit codes:
    0 = thresholds passed, 99 = thresholds failed, 2 = config error, 3 = cancelled
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a scenario file")
    run_parser.add_argument("scenario", type=Path, help="Path to the JSON scenario file")
    run_parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Write the JSON run report to this file",
    )
    run_parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (default: LOADRIG_LOG_LEVEL or INFO)",
    )

    subparsers.add_parser("config", help="Show harness settings and where they come from")
    return parser.parse_args(argv)


def configure_logging(level: str | None) -> None:
    """Configure root logging from `level`, falling back to LOADRIG.config.run.log_level."""
    name = (level or LOADRIG.config.run.log_level).upper()
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        raise ConfigError(f"Unknown log level: {level!r}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


def run_command(scenario_path: Path, out: Path | None = None) -> int:
    """
    Load, run and report a scenario.

    Returns:
        The process exit code.
    """
    try:
        LOADRIG.validate()
        scenario = load_scenario(scenario_path)
    except ConfigError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    run = LoadTestRun(scenario)
    restore = _install_interrupt_handler(run)
    try:
        report = run.run()
    finally:
        restore()

    print(report.render())
    if out is not None:
        report.write_to_file(out)
        logger.info(f"📄 Report saved to {out}")
    return report.exit_code


def _install_interrupt_handler(run: LoadTestRun):
    """
    Route Ctrl+C to `run.cancel()`: the first one drains gracefully, the second one stops hard.

    Returns:
        A callable restoring the previous handler.
    """
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    interrupts = 0

    def handler(signum: int, frame: FrameType | None) -> None:
        nonlocal interrupts
        interrupts += 1
        run.cancel("Interrupted by user", hard=interrupts > 1)

    previous = signal.signal(signal.SIGINT, handler)
    return lambda: signal.signal(signal.SIGINT, previous)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        configure_logging(getattr(args, "log_level", None))
    except ConfigError as e:
        print(f"❌ {e}")
        return EXIT_CONFIG_ERROR

    if args.command == "config":
        try:
            LOADRIG.validate()
        except ConfigError as e:
            logger.error(f"❌ Invalid configuration: {e}")
            return EXIT_CONFIG_ERROR
        LOADRIG.explain()
        return EXIT_OK

    return run_command(args.scenario, out=args.out)
