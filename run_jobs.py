"""
Run a maintenance job once, outside the in-process scheduler (e.g. from cron).

    python run_jobs.py expire
    python run_jobs.py warn
    python run_jobs.py cleanup-sessions
    python run_jobs.py sync-panel
"""
import argparse
import sys

from app import create_app
from config import Config
from utils.expiration_sweeper import expire_subscriptions, retry_panel_sync, warn_expiring_subscriptions
from utils.login_sessions import cleanup_login_sessions


class JobConfig(Config):
    SCHEDULER_ENABLED = False


JOBS = {
    'expire': expire_subscriptions,
    'warn': warn_expiring_subscriptions,
    'cleanup-sessions': cleanup_login_sessions,
    'sync-panel': retry_panel_sync,
}


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument('job', choices=sorted(JOBS))
    args = parser.parse_args(argv)

    app = create_app(JobConfig)
    with app.app_context():
        result = JOBS[args.job]()
    print(f"[SUCCESS] {args.job}: {result}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
