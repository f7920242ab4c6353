"""
Seed RBAC defaults — permissions, capabilities, roles (both naming eras),
grants, navigation/route/api resources and workflow transitions.

Usage:
    python scripts/seed_rbac.py                              # development DB
    python scripts/seed_rbac.py --env production
    python scripts/seed_rbac.py --admin-email admin@corp.example
    python scripts/seed_rbac.py --migrate-pending-review

This script is idempotent — safe to run multiple times.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from docguard import create_app
from docguard.services.authz_vocabulary import check_vocabulary_consistency
from docguard.services.seed_service import seed_defaults
from docguard.services.workflow_service import migrate_pending_review_to_in_review


def main():
    parser = argparse.ArgumentParser(description="Seed docguard authorization defaults")
    parser.add_argument("--env", default="development", help="App environment")
    parser.add_argument("--admin-email", default=None,
                        help="Create (or re-activate) an administrator user")
    parser.add_argument("--migrate-pending-review", action="store_true",
                        help="Also rename legacy PENDING_REVIEW statuses to IN_REVIEW")
    args = parser.parse_args()

    os.environ.setdefault("APP_ENV", args.env)
    app = create_app(args.env)

    with app.app_context():
        print("=" * 60)
        print("Seeding authorization defaults")
        print("=" * 60)
        summary = seed_defaults(admin_email=args.admin_email)
        for key, count in summary.items():
            print(f"  {key:<14} {count} new")

        if args.migrate_pending_review:
            counts = migrate_pending_review_to_in_review()
            print(f"  migrated       {counts}")

        report = check_vocabulary_consistency()
        print("Vocabulary consistent" if report["ok"] else f"Vocabulary drift: {report}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
