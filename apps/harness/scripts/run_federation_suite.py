#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _default_evidence_paths() -> tuple[Path, Path]:
    timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    base_dir = _repo_root() / "docs" / "evidence" / "federation"
    return (
        base_dir / f"federation-suite-{timestamp}.json",
        base_dir / f"federation-suite-{timestamp}.md",
    )


def _render_markdown(report: dict[str, Any], json_path: Path) -> str:
    summary = report["summary"]
    lines: list[str] = []
    lines.append("# Federation Consistency Evidence")
    lines.append("")
    lines.append(f"- Generated at (UTC): `{report['generated_at_utc']}`")
    lines.append(f"- Python: `{report['python']}`")
    lines.append(f"- Target: `{report['target']}`")
    lines.append(f"- JSON evidence: `{json_path}`")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append(f"- Overall status: `{summary['overall_status']}`")
    lines.append(f"- Total scenarios: `{summary['total']}`")
    lines.append(f"- Success: `{summary['success']}`")
    lines.append(f"- Failed: `{summary['failed']}`")
    lines.append(f"- Expected failure: `{summary['expected_failure']}`")
    lines.append(f"- Unexpected pass: `{summary['unexpected_pass']}`")
    lines.append("")

    for scenario in report["scenarios"]:
        lines.append(f"## Scenario {scenario['scenario']}: {scenario['name']}")
        lines.append("")
        lines.append(f"- Status: `{scenario['status']}`")
        lines.append(f"- Duration (ms): `{scenario['duration_ms']}`")
        if "known_issue" in scenario:
            lines.append(f"- Known issue: {scenario['known_issue']}")
        if "error" in scenario:
            lines.append(f"- Error: `{scenario['error']}`")
        for key, value in sorted(scenario["details"].items()):
            lines.append(f"- {key}: `{value}`")
        for message in scenario.get("teardown_errors", []):
            lines.append(f"- Teardown error: `{message}`")
        lines.append("")

    if report["reset_errors"]:
        lines.append("## Reset Errors")
        lines.append("")
        for message in report["reset_errors"]:
            lines.append(f"- `{message}`")
        lines.append("")

    lines.append("## Actionable Follow-up")
    lines.append("")
    lines.append("- An `unexpected_pass` means the known replication bug looks fixed; drop its known-issue mark.")
    lines.append("- Teardown or reset errors leave follows or posts behind; reset the instances before the next run.")
    lines.append("")

    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    default_json, default_md = _default_evidence_paths()

    parser = argparse.ArgumentParser(description="Run federation consistency scenarios and write evidence docs.")
    parser.add_argument("--output-json", type=Path, default=default_json, help="path to JSON evidence output")
    parser.add_argument("--output-md", type=Path, default=default_md, help="path to Markdown evidence output")
    parser.add_argument(
        "--scenario",
        action="append",
        default=[],
        help="run only this scenario key (repeatable)",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="run against in-process simulated instances instead of live servers",
    )
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    import httpx

    from lemmyfed_harness.config import HarnessConfig
    from lemmyfed_harness.registry import InstanceRegistry
    from lemmyfed_harness.scenarios import default_scenarios, run_federation_suite

    config = HarnessConfig.from_env()
    transports: dict[str, httpx.AsyncBaseTransport] = {}
    if args.simulate:
        from lemmyfed_instance_sim.main import create_apps
        from lemmyfed_instance_sim.network import FederationNetwork

        network = FederationNetwork(
            {endpoint.name: endpoint.federation_host for endpoint in config.instances},
            password=config.password,
        )
        transports = {
            name: httpx.ASGITransport(app=app)
            for name, app in create_apps(network, api_prefix=config.api_prefix).items()
        }

    scenarios = default_scenarios()
    if args.scenario:
        unknown = sorted(set(args.scenario) - {item.key for item in scenarios})
        if unknown:
            raise ValueError(f"unknown scenario keys: {', '.join(unknown)}")
        scenarios = [item for item in scenarios if item.key in args.scenario]

    async with InstanceRegistry(config, transports=transports) as registry:
        return await run_federation_suite(registry, scenarios)


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        import httpx

        from lemmyfed_harness.errors import HarnessError
        from lemmyfed_harness.security import redact_sensitive_text
    except ModuleNotFoundError as exc:
        print(f"[federation] missing dependency: {exc.name}", file=sys.stderr)
        print("[federation] install the harness before running the suite:", file=sys.stderr)
        print("  python3 -m venv .venv && .venv/bin/pip install -e .[test]", file=sys.stderr)
        return 2

    try:
        report = asyncio.run(_run(args))
    except ModuleNotFoundError as exc:
        print(f"[federation] missing dependency: {exc.name}", file=sys.stderr)
        return 2
    except (HarnessError, httpx.HTTPError, ValueError) as exc:
        # login or main-community setup failed before any scenario ran
        print(f"[federation] setup failed: {redact_sensitive_text(str(exc))}", file=sys.stderr)
        return 2

    report["generated_at_utc"] = datetime.now(tz=timezone.utc).isoformat()
    report["python"] = platform.python_version()
    report["target"] = "simulated" if args.simulate else "live"

    args.output_json.parent.mkdir(parents=True, exist_ok=True)
    args.output_md.parent.mkdir(parents=True, exist_ok=True)

    args.output_json.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    args.output_md.write_text(_render_markdown(report, args.output_json) + "\n", encoding="utf-8")

    print(f"[federation] evidence json: {args.output_json}")
    print(f"[federation] evidence md:   {args.output_md}")
    print(f"[federation] summary:       {report['summary']}")

    if report["summary"]["overall_status"] != "success":
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
