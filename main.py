"""
main.py - CLI production-line simulator for the quality-control agent.

Runs the agent over one or more bag images, strictly one at a time, the way
a line feeds bags to inspection:
1. run the agent on the image (steps printed as they happen)
2. on a fail decision, finalize and store the incident
3. wait the inter-item delay, then take the next bag

Without OPENAI_API_KEY the vision model is replaced by canned replies chosen
from the image filename (see extract.mock_vision_response), and decision
synthesis falls back to the deterministic table.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import date
from pathlib import Path
from typing import Any, Optional

from agent import QualityControlAgent
from config import Settings, load_settings
from extract import SUPPORTED_EXTENSIONS, ExtractionError, load_image, mock_vision_response
from incident_store import IncidentStore
from llm_client import ModelClient, OpenAIModelClient, ScriptedModelClient
from logging_config import get_logger, setup_logging
from models import AgentDecision, CallerMetadata, ProductType, Step, StepStatus
from tools import build_incident

logger = get_logger("qc-agent")


def _configure_output_symbols() -> tuple[str, str, str]:
    """Configure stdout encoding and return safe line/pass/fail symbols."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, ValueError):
        pass

    try:
        "═✓✗".encode(sys.stdout.encoding or "utf-8")
        return "═", "✓", "✗"
    except UnicodeEncodeError:
        return "=", "+", "X"


BOX_CHAR, PASS_CHAR, FAIL_CHAR = _configure_output_symbols()

STATUS_MARKS = {
    StepStatus.COMPLETED: PASS_CHAR,
    StepStatus.FLAGGED: "!",
    StepStatus.ERROR: FAIL_CHAR,
}


def collect_images(images: Optional[list[str]], directory: Optional[str]) -> list[Path]:
    """Resolve the CLI image arguments into an ordered list of files."""
    paths = [Path(item) for item in images or []]
    if directory:
        folder = Path(directory)
        if not folder.is_dir():
            raise FileNotFoundError(f"Image directory not found: {directory}")
        paths.extend(
            sorted(
                item
                for item in folder.iterdir()
                if item.is_file()
                and not item.name.startswith((".", "_"))
                and item.suffix.lower() in SUPPORTED_EXTENSIONS
            )
        )
    return paths


def client_for_image(settings: Settings, image_path: Path, shared: Optional[ModelClient] = None) -> ModelClient:
    """The shared OpenAI client when configured, else filename-keyed mock replies."""
    if shared is not None:
        return shared
    return ScriptedModelClient(vision_replies=[mock_vision_response(image_path.name)])


def _print_step(step: Step) -> None:
    if step.status is StepStatus.RUNNING:
        print(f"  ... {step.name}: {step.reasoning}")
        return
    mark = STATUS_MARKS.get(step.status, "?")
    print(f"  {mark}   {step.name}: {step.reasoning}")


def _print_decision(decision: AgentDecision, incident_id: Optional[str]) -> None:
    verdict = "PASS" if decision.is_pass else "FAIL"
    print()
    print(f"  Decision:   {verdict} ({decision.confidence:.0%} confidence)")
    print(f"  Reason:     {decision.reason}")
    if decision.agent_reasoning is not None:
        impact = decision.agent_reasoning.business_impact
        print(f"  Action:     {decision.agent_reasoning.action.value} [{decision.agent_reasoning.source.value}]")
        print(f"  Impact:     ${impact.estimated_cost:,.0f} | risk={impact.risk_level.value}")
    if incident_id:
        print(f"  Incident:   {incident_id}")


async def run_sequence(
    paths: list[Path],
    settings: Settings,
    store: IncidentStore,
    expected_product: Optional[ProductType] = None,
    inspection_date: Optional[date] = None,
    delay: float = 0.0,
    quiet: bool = False,
) -> list[dict[str, Any]]:
    """Inspect each image in order and return one result row per image."""
    shared = OpenAIModelClient.from_settings(settings) if settings.has_api_key else None
    if shared is None:
        logger.info("cli_mock_mode | api_key=missing | note='vision replies chosen by filename'")

    results: list[dict[str, Any]] = []
    for index, path in enumerate(paths, start=1):
        if index > 1 and delay > 0:
            await asyncio.sleep(delay)

        if not quiet:
            print(f"\n{BOX_CHAR * 60}")
            print(f"  Bag {index}/{len(paths)}: {path.name}")
            print(f"{BOX_CHAR * 60}")

        metadata = CallerMetadata(
            expected_product=expected_product,
            inspection_date=inspection_date,
            image_id=f"BAG-{index}",
            bag_number=index,
        )
        agent = QualityControlAgent(
            client_for_image(settings, path, shared),
            store,
            on_step=None if quiet else _print_step,
            step_delay=settings.step_delay_seconds,
            history_days=settings.history_days,
        )

        start = time.time()
        try:
            decision = await agent.run(load_image(str(path)), metadata)
        except (ExtractionError, FileNotFoundError, ValueError) as exc:
            logger.error(
                "cli_bag_error | file=%s | error_type=%s | error=%s",
                path.name,
                type(exc).__name__,
                exc,
            )
            if not quiet:
                print(f"\n  {FAIL_CHAR} Error inspecting {path.name}: {exc}\n")
            results.append({"file": path.name, "status": "error", "error": str(exc)})
            continue

        incident_id = None
        if decision is not None and decision.pending_incident is not None:
            incident_id = store.append(build_incident(decision.pending_incident, decision)).id

        logger.info(
            "cli_bag_complete | file=%s | status=%s | action=%s | duration_s=%.2f",
            path.name,
            decision.status.value,
            decision.action.value if decision.action else None,
            time.time() - start,
        )
        if not quiet:
            _print_decision(decision, incident_id)
        results.append(
            {
                "file": path.name,
                "status": decision.status.value,
                "action": decision.action.value if decision.action else None,
                "confidence": decision.confidence,
                "reason": decision.reason,
                "incident_id": incident_id,
                "decision": decision.model_dump(mode="json"),
            }
        )
    return results


def _print_summary_table(results: list[dict[str, Any]], store: IncidentStore) -> None:
    """Print a formatted summary table for the whole sequence."""
    print(f"\n{BOX_CHAR * 60}")
    print(f"  SUMMARY - {len(results)} bag(s) inspected")
    print(f"{BOX_CHAR * 60}")
    print()
    print(f"  {'Image':<30} {'Status':<7} {'Action':<12} {'Conf':>5}")
    print(f"  {'─' * 30} {'─' * 7} {'─' * 12} {'─' * 5}")

    for row in results:
        name = row["file"]
        short_name = name[:28] + ".." if len(name) > 30 else name
        action = row.get("action") or "-"
        confidence = row.get("confidence") or 0.0
        print(f"  {short_name:<30} {row['status'].upper():<7} {action:<12} {confidence * 100:>4.0f}%")

    stats = store.stats()
    print()
    print(
        f"  Incidents stored: {stats.total} "
        f"(critical={stats.critical}, moderate={stats.moderate}, minor={stats.minor}, "
        f"stop_line={stats.stop_line_count}, alert_qa={stats.alert_qa_count})"
    )
    print(f"{BOX_CHAR * 60}")


def _parse_inspection_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the quality-control agent."""
    parser = argparse.ArgumentParser(
        prog="qc-agent",
        description=(
            "Code Date Quality Control Agent\n"
            "Inspects bag images, validates the printed code date and decides "
            "whether the line should continue, alert QA, hold the batch or stop."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --image bag_good.jpg\n"
            "  %(prog)s --image bag_on_mark.jpg --image bag_faded.jpg --delay 1.5\n"
            "  %(prog)s --dir samples/ --expected-product 84_day_no_price --json\n"
        ),
    )
    parser.add_argument(
        "--image",
        "-i",
        action="append",
        help="Path to a bag image (repeat for a sequence)",
    )
    parser.add_argument(
        "--dir",
        "-d",
        type=str,
        help="Inspect every image in this directory, in name order",
    )
    parser.add_argument(
        "--expected-product",
        choices=[product.value for product in ProductType],
        help="Expected product; enables code-type and price-marking checks",
    )
    parser.add_argument(
        "--inspection-date",
        type=_parse_inspection_date,
        help="Inspection day (YYYY-MM-DD); enables expired / future-date checks",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Seconds to wait between bags (default: 0)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON instead of the step trace",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args(argv)
    settings = load_settings()
    setup_logging(
        level=logging.DEBUG if args.verbose else settings.log_level,
        json_format=args.log_json or settings.log_json,
    )

    if not args.image and not args.dir:
        parser.error("Provide --image PATH (repeatable) or --dir DIR")
    if args.delay < 0:
        parser.error("--delay must be >= 0")

    try:
        paths = collect_images(args.image, args.dir)
        if not paths:
            raise ValueError("No images to inspect.")

        store = IncidentStore(settings.incident_file)
        logger.info(
            "cli_start | images=%d | expected_product=%s | inspection_date=%s | incident_file=%s",
            len(paths),
            args.expected_product,
            args.inspection_date,
            settings.incident_file,
        )
        results = asyncio.run(
            run_sequence(
                paths,
                settings,
                store,
                expected_product=ProductType(args.expected_product) if args.expected_product else None,
                inspection_date=args.inspection_date,
                delay=args.delay,
                quiet=args.json,
            )
        )

        if args.json:
            print(json.dumps({"results": results, "stats": store.stats().model_dump()}, indent=2, default=str))
        else:
            _print_summary_table(results, store)
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
