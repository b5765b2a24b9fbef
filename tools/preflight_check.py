"""Preflight checks for the recovery bot (no extrinsics are submitted)."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from monitor.page_loader import load_pages  # noqa: E402
from monitor.substrate_gateway import SubstrateGateway, load_signer  # noqa: E402
from trading.batch_builder import action_factory, build_batch, eligible_pages  # noqa: E402
from trading.recovery_types import WeightLimit, origin_label  # noqa: E402


@dataclass
class CheckEvent:
    level: str
    code: str
    message: str


@dataclass
class Report:
    ok: bool = True
    errors: list[CheckEvent] = field(default_factory=list)
    warnings: list[CheckEvent] = field(default_factory=list)
    infos: list[CheckEvent] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)

    def add(self, level: str, code: str, message: str) -> None:
        event = CheckEvent(level=level, code=code, message=message)
        if level == "error":
            self.ok = False
            self.errors.append(event)
        elif level == "warning":
            self.warnings.append(event)
        else:
            self.infos.append(event)


def _truthy(value: str) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _to_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except Exception:
        return default


def _env_runtime(env_file: Path) -> dict[str, str]:
    env = {str(k): str(v) for k, v in dotenv_values(env_file).items() if k is not None and v is not None}
    env_runtime = dict(os.environ)
    for k, v in env.items():
        env_runtime.setdefault(k, v)
    return env_runtime


def check_settings(env_runtime: dict[str, str], report: Report) -> None:
    endpoint = str(env_runtime.get("WS_ENDPOINT", "") or "").strip()
    if not endpoint:
        report.add("error", "endpoint_missing", "WS_ENDPOINT is empty.")
    elif not endpoint.startswith(("ws://", "wss://")):
        report.add("warning", "endpoint_scheme", f"WS_ENDPOINT should be a websocket URL: {endpoint}")

    dry_run = _truthy(env_runtime.get("DRY_RUN", "false"))
    mnemonic = str(env_runtime.get("MNEMONIC", "") or "").strip()
    if not mnemonic and not dry_run:
        report.add("error", "mnemonic_missing", "MNEMONIC is required unless DRY_RUN=true.")
    elif mnemonic:
        ss58_raw = str(env_runtime.get("SS58_FORMAT", "") or "").strip()
        try:
            keypair = load_signer(
                mnemonic,
                crypto_type=str(env_runtime.get("KEYPAIR_CRYPTO_TYPE", "sr25519") or "sr25519"),
                ss58_format=int(ss58_raw) if ss58_raw else None,
            )
            report.summary["signer_address"] = keypair.ss58_address
        except Exception as exc:
            report.add("error", "signer_invalid", f"Signer could not be loaded: {exc}")

    ref_time = _to_int(env_runtime.get("REF_TIME", "1000000000"), 1_000_000_000)
    proof_size = _to_int(env_runtime.get("PROOF_SIZE", "100000"), 100_000)
    if ref_time <= 0 or proof_size <= 0:
        report.add("error", "weight_limit_zero", f"Weight limit must be positive: ref_time={ref_time} proof_size={proof_size}.")
    batch_limit = _to_int(env_runtime.get("BATCH_LIMIT", "10"), 10)
    if batch_limit < 1:
        report.add("warning", "batch_limit_low", f"BATCH_LIMIT={batch_limit} will be clamped to 1.")

    report.summary["endpoint"] = endpoint or "<empty>"
    report.summary["weight_limit"] = {"ref_time": ref_time, "proof_size": proof_size}
    report.summary["batch_limit"] = max(1, batch_limit)
    report.summary["dry_run"] = dry_run


async def probe_chain(endpoint: str, weight_limit: WeightLimit, batch_limit: int, report: Report) -> None:
    started = time.perf_counter()
    try:
        gateway = await SubstrateGateway.connect(endpoint, retries=1)
    except Exception as exc:
        report.add("error", "chain_unreachable", f"Cannot connect to {endpoint}: {exc}")
        return
    report.summary["connect_latency_ms"] = round((time.perf_counter() - started) * 1000.0, 1)
    try:
        head = await gateway.query_service_head()
        report.summary["service_head"] = head
        if head is not None:
            report.add("info", "service_head_active", f"Chain is servicing the queue head: {head}")

        pages = load_pages(await gateway.query_queue_pages())
        eligible = eligible_pages(pages)
        report.summary["pages_total"] = len(pages)
        report.summary["pages_eligible"] = len(eligible)

        batch = await build_batch(
            pages,
            set(),
            weight_limit=weight_limit,
            make_action=action_factory(gateway),
            max_batch_size=batch_limit,
        )
        report.summary["batch_preview"] = [
            {"origin": origin_label(a.origin), "page": a.page_index, "call": a.fingerprint} for a in batch
        ]
        if batch:
            await gateway.build_batch_call([a.call for a in batch])
            report.add("info", "batch_compose_ok", f"force_batch composed with {len(batch)} call(s).")
        else:
            report.add("info", "batch_empty", "No overweight pages to recover right now.")
    except Exception as exc:
        report.add("error", "chain_probe_failed", f"Chain probe failed: {exc}")
    finally:
        await gateway.disconnect()


def run_checks(env_file: Path) -> Report:
    report = Report()
    if not env_file.exists():
        report.add("warning", "env_missing", f".env file not found: {env_file}; using process environment only")
        env_runtime = dict(os.environ)
    else:
        env_runtime = _env_runtime(env_file)

    check_settings(env_runtime, report)
    if report.errors and report.summary.get("endpoint") == "<empty>":
        return report

    weight = report.summary["weight_limit"]
    asyncio.run(
        probe_chain(
            str(report.summary["endpoint"]),
            WeightLimit(ref_time=weight["ref_time"], proof_size=weight["proof_size"]),
            int(report.summary["batch_limit"]),
            report,
        )
    )
    report.summary["env_file"] = str(env_file)
    return report


def _print_report(report: Report) -> None:
    print("=== RECOVERY BOT PREFLIGHT CHECK ===")
    print(f"status: {'PASS' if report.ok else 'FAIL'}")
    print("")
    if report.summary:
        print("Summary:")
        for k, v in report.summary.items():
            print(f"- {k}: {v}")
        print("")

    def _emit(title: str, items: list[CheckEvent]) -> None:
        if not items:
            return
        print(f"{title}:")
        for item in items:
            print(f"- [{item.code}] {item.message}")
        print("")

    _emit("Errors", report.errors)
    _emit("Warnings", report.warnings)
    _emit("Info", report.infos)


def main() -> int:
    parser = argparse.ArgumentParser(description="Preflight checks for the overweight message recovery bot.")
    parser.add_argument("--env-file", default=".env", help="Path to env file (default: .env)")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON report")
    args = parser.parse_args()

    report = run_checks(env_file=Path(args.env_file))
    _print_report(report)

    if args.json_out:
        payload = {
            "ok": report.ok,
            "summary": report.summary,
            "errors": [x.__dict__ for x in report.errors],
            "warnings": [x.__dict__ for x in report.warnings],
            "infos": [x.__dict__ for x in report.infos],
        }
        out_path = Path(args.json_out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(payload, ensure_ascii=True, indent=2, default=str), encoding="utf-8")
        print(f"json_report: {out_path}")

    return 0 if report.ok else 2


if __name__ == "__main__":
    sys.exit(main())
