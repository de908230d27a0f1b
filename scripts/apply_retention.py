#!/usr/bin/env python3
from __future__ import annotations

import argparse
import importlib
import json
import sys
from datetime import timedelta
from pathlib import Path


def run(argv: list[str] | None = None) -> int:
  parser = argparse.ArgumentParser(description="Trim conversation history for idle chat sessions.")
  parser.add_argument(
    "--idle-minutes",
    type=int,
    default=30,
    help="Only sessions with no pending action and no turn for this long are trimmed.",
  )
  args = parser.parse_args(argv)

  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Same env-driven configuration (db path, retention days, turn cap) as the API.
  backend_module = importlib.import_module("main")
  result = backend_module.container.storage.apply_retention_to_idle_sessions(
    idle_for=timedelta(minutes=max(0, args.idle_minutes)),
  )
  backend_module.logger.info(
    "Retention sweep sessions=%d expired=%d overflow=%d",
    result["session_count"],
    result["expired_turn_count"],
    result["overflow_turn_count"],
  )
  print(json.dumps(result, indent=2))
  return 0


if __name__ == "__main__":
  raise SystemExit(run())
