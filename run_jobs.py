"""
Background job runner for DMARC Analyser.

Run from cron (or any scheduler) to refresh DNS records, pull reports from
connected Gmail accounts, send scheduled summaries, geolocate new sources
and enforce data retention.

SUGGESTED CRON SCHEDULE
=======================
  */15 * * * *  python run_jobs.py scheduled-reports
  0 * * * *     python run_jobs.py gmail-sync
  30 * * * *    python run_jobs.py enrich
  0 6 * * *     python run_jobs.py dns-check
  0 3 * * *     python run_jobs.py retention

  Scheduled tasks do not inherit the web app's environment; export
  SECRET_KEY, DATABASE_URL and the MAIL_* / GMAIL_* settings in the command
  or source a .env file first.

USAGE
=====
  python run_jobs.py dns-check
  python run_jobs.py all --verbose

EXIT CODES
==========
  0 - Job completed (individual domain or account failures are logged)
  1 - Fatal error (app could not start, or the job raised)
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone

JOB_NAMES = ("dns-check", "gmail-sync", "scheduled-reports", "enrich", "retention", "all")


# ---------------------------------------------------------------------------
# Argument parsing (done before app import so --help works without Flask)
# ---------------------------------------------------------------------------


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run DMARC Analyser background jobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("job", choices=JOB_NAMES, help="Job to run.")
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Enable DEBUG-level logging output.",
    )
    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> logging.Logger:
    logging.basicConfig(
        stream=sys.stdout,
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
    )
    return logging.getLogger("run_jobs")


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Run the requested job.

    Returns:
        Integer exit code: 0 for success, 1 for fatal error.
    """
    args = _parse_args(argv)
    logger = _configure_logging(args.verbose)

    run_start = datetime.now(timezone.utc)
    logger.info("=== run_jobs.py %s started at %s ===", args.job, run_start.isoformat())

    try:
        from dmarc_analyser import create_app

        flask_app = create_app()
    except Exception:
        logger.exception("FATAL: Failed to create Flask application.")
        return 1

    with flask_app.app_context():
        from dmarc_analyser.jobs import run_all, run_job

        try:
            result = run_all() if args.job == "all" else run_job(args.job)
        except Exception:
            logger.exception("FATAL: Job %s failed.", args.job)
            return 1

    elapsed = (datetime.now(timezone.utc) - run_start).total_seconds()
    logger.info("=== Run complete: job=%s result=%s elapsed=%.1fs ===", args.job, result, elapsed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
