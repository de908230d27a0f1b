#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient


@dataclass
class Scenario:
  name: str
  message: str
  expected_type: str


def post_chat(client: TestClient, user_id: str, text: str, **extra: Any) -> tuple[int, dict[str, Any]]:
  response = client.post("/api/chat", json={"user_id": user_id, "text": text, **extra})
  try:
    body = response.json()
  except ValueError:
    body = {"raw": response.text[:500]}
  return response.status_code, body


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Keep smoke runs away from the developer database.
  scratch_dir = tempfile.mkdtemp(prefix="healthlab-smoke-")
  os.environ.setdefault("HEALTHLAB_DB_PATH", str(Path(scratch_dir) / "smoke.sqlite"))
  os.environ.setdefault("HEALTHLAB_SCORER", "keyword")

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  user_id = f"smoke-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"

  scenarios = [
    Scenario(name="Greeting", message="Hello", expected_type="text"),
    Scenario(name="Symptom Suggestions", message="I have fever and chills", expected_type="suggestions"),
    Scenario(name="Fatigue Suggestions", message="I feel tired and dizzy all week", expected_type="suggestions"),
    Scenario(name="Booking Command", message="Book CBC tomorrow 10am", expected_type="booking_confirmed"),
    Scenario(name="Report Request", message="Can I see my report?", expected_type="action_required"),
  ]

  results: list[dict[str, Any]] = []
  booking: dict[str, Any] = {}

  with TestClient(backend_module.app) as client:
    for scenario in scenarios:
      if scenario.expected_type == "action_required" and booking:
        client.patch(f"/api/bookings/{booking['booking_id']}", json={"status": "confirmed"})
        client.post(
          f"/api/bookings/{booking['booking_id']}/report",
          json={"summary": "Hemoglobin 13.9 g/dL, WBC 6.1 x10^9/L"},
        )

      status_code, body = post_chat(client, user_id, scenario.message)
      scenario_result: dict[str, Any] = {
        "name": scenario.name,
        "expected_type": scenario.expected_type,
        "actual_type": body.get("type"),
        "chat_status_code": status_code,
        "chat_message_preview": str(body.get("message", ""))[:240],
        "response": {key: value for key, value in body.items() if key != "pin"},
      }
      if body.get("type") == "booking_confirmed":
        booking = {"booking_id": body.get("booking_id"), "pin": body.get("pin")}

      scenario_result["pass"] = status_code == 200 and body.get("type") == scenario.expected_type
      if not scenario_result["pass"]:
        scenario_result["error"] = f"Expected {scenario.expected_type}, got {body.get('type')!r} ({status_code})"
      results.append(scenario_result)

    pin_result: dict[str, Any] = {"name": "PIN Verification", "expected_type": "report"}
    if booking.get("pin"):
      status_code, body = post_chat(client, user_id, f"{booking['booking_id']} {booking['pin']}")
      pin_result.update(
        {
          "actual_type": body.get("type"),
          "chat_status_code": status_code,
          "chat_message_preview": str(body.get("message", ""))[:240],
          "response": body,
          "pass": status_code == 200 and body.get("type") == "report",
        }
      )
      if not pin_result["pass"]:
        pin_result["error"] = f"Expected report, got {body.get('type')!r} ({status_code})"
    else:
      pin_result.update({"pass": False, "error": "No booking was confirmed earlier in the run."})
    results.append(pin_result)

    history = client.get("/api/chat/history", params={"user_id": user_id}).json()

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# HealthLab Chat E2E Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- HEALTHLAB_DB_PATH: `{os.getenv('HEALTHLAB_DB_PATH')}`",
    f"- HEALTHLAB_SCORER: `{os.getenv('HEALTHLAB_SCORER')}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    f"- Stored turns: `{len(history.get('items', []))}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Expected type: `{item.get('expected_type')}`")
    report_lines.append(f"- Actual type: `{item.get('actual_type')}`")
    report_lines.append(f"- Chat status code: `{item.get('chat_status_code')}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    preview = item.get("chat_message_preview") or ""
    if preview:
      report_lines.append(f"- Chat preview: `{preview}`")
    report_lines.append("- Response payload:")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("response"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "CHAT_E2E_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
