"""
Out-of-band dead-letter queue inspection and replay.

    python -m webhook_pipeline.scripts.dlq_tool list
    python -m webhook_pipeline.scripts.dlq_tool redrive <message_id> [<message_id> ...]
    python -m webhook_pipeline.scripts.dlq_tool redrive --all
    python -m webhook_pipeline.scripts.dlq_tool purge-expired

Uses the same QUEUE_BACKEND settings as the service. The in-memory backend
lives inside the service process, so this tool is only useful with redis
or sqs.
"""
import argparse
import json
import sys
from typing import List, Optional

from webhook_pipeline.core.config import settings
from webhook_pipeline.core.container import build_queues
from webhook_pipeline.integrations.queue_base import DurableQueue


def list_dead_letters(dlq: DurableQueue) -> int:
    messages = dlq.list_messages()
    for message in messages:
        print(json.dumps({
            "message_id": message.message_id,
            "enqueued_at": message.enqueued_at,
            "receive_count": message.receive_count,
            "reason": message.dead_letter_reason,
            "body": message.body,
        }))
    print(f"{len(messages)} message(s) in {dlq.name}", file=sys.stderr)
    return 0


def redrive(queue: DurableQueue, message_ids: List[str], redrive_all: bool) -> int:
    if redrive_all:
        message_ids = [m.message_id for m in queue.dead_letter_queue.list_messages()]
    missing = 0
    for message_id in message_ids:
        new_id = queue.redrive(message_id)
        if new_id is None:
            print(f"not found: {message_id}", file=sys.stderr)
            missing += 1
        else:
            print(f"redriven: {message_id} -> {new_id}")
    return 1 if missing else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect and replay dead-lettered webhook messages")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="print dead-lettered messages as JSON lines")
    redrive_parser = sub.add_parser("redrive", help="move messages back to the primary queue")
    redrive_parser.add_argument("message_ids", nargs="*")
    redrive_parser.add_argument("--all", action="store_true", dest="redrive_all")
    sub.add_parser("purge-expired", help="drop messages past retention in both queues")
    args = parser.parse_args(argv)

    queue, dlq, closers = build_queues(settings)
    try:
        if args.command == "list":
            return list_dead_letters(dlq)
        if args.command == "redrive":
            if not args.message_ids and not args.redrive_all:
                parser.error("redrive needs message ids or --all")
            return redrive(queue, args.message_ids, args.redrive_all)
        purged = queue.purge_expired() + dlq.purge_expired()
        print(f"purged {purged} expired message(s)")
        return 0
    finally:
        for closer in closers:
            closer()


if __name__ == "__main__":
    sys.exit(main())
