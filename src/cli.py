"""Operator CLI for the webhook delivery engine.

Usage:
    python -m src.cli run-scheduler
    python -m src.cli list --status dead_letter
    python -m src.cli requeue <delivery-id>
    python -m src.cli test https://partner.example/webhook --template failed
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from typing import Any

from src.config import Settings, get_settings
from src.delivery.executor import DeliveryExecutor
from src.delivery.scheduler import RetryScheduler
from src.models.delivery import DeliveryRecord, DeliveryStatus
from src.observability.alerting import AlertManager
from src.observability.metrics import MetricsCollector
from src.replay.manager import WebhookReplayManager
from src.replay.templates import TEMPLATES
from src.store.exceptions import StoreError
from src.store.store import DeliveryStore
from src.utils.logging_config import configure_logging


def _record_to_dict(record: DeliveryRecord) -> dict[str, Any]:
    data = asdict(record)
    data.pop("secret")
    data["status"] = record.status.value
    return data


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


def _executor(settings: Settings) -> DeliveryExecutor:
    return DeliveryExecutor(
        timeout_seconds=settings.request_timeout_seconds,
        response_body_limit=settings.response_body_limit,
    )


def _harness(settings: Settings, store: DeliveryStore) -> WebhookReplayManager:
    return WebhookReplayManager(
        executor=_executor(settings),
        store=store,
        secret=settings.test_secret,
        tolerance_seconds=settings.signature_tolerance_seconds,
    )


def _alerts(settings: Settings) -> AlertManager:
    return AlertManager(
        metrics=MetricsCollector(window_seconds=settings.metrics_window_seconds),
        threshold=settings.failure_rate_threshold,
    )


def _scheduler(settings: Settings, store: DeliveryStore) -> RetryScheduler:
    return RetryScheduler.from_settings(settings, store, alerts=_alerts(settings))


def _parse_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise argparse.ArgumentTypeError("payload must be a JSON object")
    return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="webhook-ops",
        description="Inspect and operate the webhook delivery queue.",
    )
    parser.add_argument("--database-url", help="Override WEBHOOK_DATABASE_URL.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run-scheduler", help="Run the retry scheduler until interrupted.")
    subparsers.add_parser("tick", help="Run a single scheduler pass.")

    enqueue = subparsers.add_parser("enqueue", help="Queue a delivery.")
    enqueue.add_argument("target_url")
    enqueue.add_argument("--payload", type=_parse_payload, required=True)
    enqueue.add_argument("--secret", required=True)
    enqueue.add_argument("--max-attempts", type=int)

    list_cmd = subparsers.add_parser("list", help="List deliveries.")
    list_cmd.add_argument("--status", choices=[s.value for s in DeliveryStatus])
    list_cmd.add_argument("--target-url")
    list_cmd.add_argument("--limit", type=int, default=100)

    subparsers.add_parser("stats", help="Show queue statistics.")

    dead_letter = subparsers.add_parser("dead-letter", help="Stop retrying a pending delivery.")
    dead_letter.add_argument("delivery_id")

    requeue = subparsers.add_parser("requeue", help="Requeue a dead-lettered delivery.")
    requeue.add_argument("delivery_id")

    test = subparsers.add_parser("test", help="Send one test webhook.")
    test.add_argument("target_url")
    group = test.add_mutually_exclusive_group()
    group.add_argument("--template", choices=sorted(TEMPLATES), default="success")
    group.add_argument("--payload", type=_parse_payload)

    replay = subparsers.add_parser("replay", help="Replay a stored delivery.")
    replay.add_argument("original_id", help="Delivery id or payload event id.")
    replay.add_argument("target_url")
    replay.add_argument("--payload", type=_parse_payload, help="Send this body instead.")

    history = subparsers.add_parser("history", help="Show test and replay history.")
    history.add_argument("--kind", choices=["test", "replay"])
    history.add_argument("--limit", type=int, default=20)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def _run(args: argparse.Namespace, settings: Settings, store: DeliveryStore) -> int:
    if args.command == "run-scheduler":
        scheduler = _scheduler(settings, store)
        try:
            scheduler.run_forever()
        except KeyboardInterrupt:
            scheduler.stop()
        return 0

    if args.command == "tick":
        _print_json(asdict(_scheduler(settings, store).tick()))
    elif args.command == "enqueue":
        record = store.enqueue(
            args.target_url,
            args.payload,
            args.secret,
            max_attempts=args.max_attempts or settings.max_attempts,
        )
        _print_json(_record_to_dict(record))
    elif args.command == "list":
        status = DeliveryStatus(args.status) if args.status else None
        records = store.list_deliveries(status=status, target_url=args.target_url, limit=args.limit)
        _print_json([_record_to_dict(r) for r in records])
    elif args.command == "stats":
        _print_json(store.stats())
    elif args.command == "dead-letter":
        record = store.force_dead_letter(args.delivery_id)
        _alerts(settings).dead_letter(record, reason="operator")
        _print_json(_record_to_dict(record))
    elif args.command == "requeue":
        _print_json(_record_to_dict(store.requeue(args.delivery_id)))
    elif args.command == "test":
        payload = args.payload if args.payload is not None else args.template
        _print_json(asdict(_harness(settings, store).test_deliver(args.target_url, payload)))
    elif args.command == "replay":
        invocation = _harness(settings, store).replay(
            args.original_id, args.target_url, custom_payload=args.payload
        )
        _print_json(asdict(invocation))
    elif args.command == "history":
        invocations = _harness(settings, store).history(kind=args.kind, limit=args.limit)
        _print_json([asdict(i) for i in invocations])
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    configure_logging(settings.log_level)

    store = DeliveryStore.from_url(
        settings.database_url, response_body_limit=settings.response_body_limit
    )
    try:
        return _run(args, settings, store)
    except StoreError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        store.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
