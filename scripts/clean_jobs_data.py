#!/usr/bin/env python3
"""
Delete every job (assignments cascade) and every import batch (rows cascade).

Usage:
  python3 scripts/clean_jobs_data.py            # dry run, prints what would happen
  python3 scripts/clean_jobs_data.py --yes      # actually delete
"""

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app_settings import load_app_settings
from repositories.job_repo import BackendRequestError
from repositories.supabase_job_repo import SupabaseJobRepo


def clean_jobs_data(repo, dry_run=True):
    result = {"success": True, "dry_run": dry_run, "jobs_deleted": False, "batches_deleted": False, "errors": []}
    if dry_run:
        return result

    try:
        repo.delete_all_jobs()
        result["jobs_deleted"] = True
    except BackendRequestError as exc:
        result["errors"].append(f"Error deleting jobs: {exc}")

    try:
        repo.delete_all_import_batches()
        result["batches_deleted"] = True
    except BackendRequestError as exc:
        result["errors"].append(f"Error deleting batches: {exc}")

    result["success"] = not result["errors"]
    return result


def main():
    parser = argparse.ArgumentParser(description="Delete all jobs and import batches from Supabase.")
    parser.add_argument("--yes", action="store_true", help="Confirm deletion (default is a dry run).")
    args = parser.parse_args()

    app_settings = load_app_settings()
    service_key = app_settings.supabase_service_key
    if not app_settings.supabase_url or not service_key:
        print("SUPABASE_URL and SUPABASE_SECRET_KEY (or SUPABASE_SERVICE_ROLE_KEY) are required.")
        return 1

    repo = SupabaseJobRepo(app_settings.supabase_url, service_key, timeout_seconds=app_settings.request_timeout_seconds)
    if not args.yes:
        print("Dry-run only. Re-run with --yes to delete all jobs and import batches.")
    result = clean_jobs_data(repo, dry_run=not args.yes)
    print(result)
    return 0 if result["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
