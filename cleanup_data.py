#!/usr/bin/env python3
"""
Run the data-retention policy over every stored session, outside the server.

Usage: python cleanup_data.py [--dry-run] [--policy-file policy.json] [--store sessions.json]
  --dry-run      Report what would be archived/deleted without changing anything
  --policy-file  JSON object with maxAge / maxSessions / archiveAfter / deleteAfter
                 (days), merged over the configured defaults
  --store        Session store JSON file (default: SESSION_STORE_PATH)

Exits 1 when any owner or session reported an error.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)
load_dotenv(Path(PROJECT_ROOT) / ".env")

import config
from services.retention import RetentionEngine, RetentionPolicy
from services.session_store import JsonFileSessionStore, StorageError

logger = logging.getLogger("cleanup_data")


def load_policy(path):
    if not path:
        return RetentionPolicy.default()
    with open(path, encoding="utf-8") as f:
        return RetentionPolicy.from_dict(json.load(f))


def main(argv=None):
    parser = argparse.ArgumentParser(description="Apply the session retention policy")
    parser.add_argument("--dry-run", action="store_true", help="Do not modify the store")
    parser.add_argument("--policy-file", default=None, help="JSON policy overrides")
    parser.add_argument("--store", default=config.SESSION_STORE_PATH, help="Session store JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.store:
        parser.error("no session store: pass --store or set SESSION_STORE_PATH")

    try:
        policy = load_policy(args.policy_file)
        store = JsonFileSessionStore(args.store)
    except (OSError, ValueError, StorageError) as e:
        logger.error("%s", e)
        return 2

    logger.info("Policy: %s%s", policy.to_dict(), " (dry run)" if args.dry_run else "")
    results = RetentionEngine(store).run_global_cleanup(policy, dry_run=args.dry_run)

    print(json.dumps(results, indent=2))
    for error in results["errors"]:
        logger.error("%s", error)
    return 1 if results["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
