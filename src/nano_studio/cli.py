import argparse
import asyncio
import base64
import json
import logging
import sys
from pathlib import Path

from .config import resolve_config
from .exceptions import ConfigError, RemoteJobError
from .logging_conf import configure_logging
from .queue import (
    CanvasState,
    ImageQueueRecord,
    ImageQueueRequest,
    QueueManager,
    RefreshScheduler,
    SQLiteRecordStore,
    VideoQueueRequest,
)
from .queue.models import SegmentRequest
from .queue.payloads import build_image_request as build_image_payload
from .remote import HttpRemoteJobClient

logger = logging.getLogger(__name__)


def read_b64(path: str) -> str:
    """Read a local file as a base64 string."""
    return base64.b64encode(Path(path).read_bytes()).decode("ascii")


def build_client(config):
    return HttpRemoteJobClient.from_config(config)


def build_manager(config, store, client, canvas=None) -> QueueManager:
    return QueueManager.from_config(config, store, client, canvas=canvas)


def build_image_request(args) -> ImageQueueRequest:
    original = getattr(args, "original", None)
    mask = getattr(args, "mask", None)
    return ImageQueueRequest(
        kind="edit" if original else "generate",
        prompt=args.prompt,
        original_image=read_b64(original) if original else None,
        mask_image=read_b64(mask) if mask else None,
        reference_images=[read_b64(p) for p in args.reference] or None,
        variant_count=args.variants,
        aspect_ratio=args.aspect_ratio,
        resolution_tier=args.resolution_tier,
        temperature=args.temperature,
        seed=args.seed,
        model=args.model,
    )


def build_video_request(args) -> VideoQueueRequest:
    return VideoQueueRequest(
        prompt=args.prompt,
        negative_prompt=args.negative_prompt,
        aspect_ratio=args.aspect_ratio,
        resolution=args.resolution,
        duration_seconds=args.duration,
        start_frame_image=read_b64(args.start_frame) if args.start_frame else None,
        last_frame_image=read_b64(args.last_frame) if args.last_frame else None,
        reference_images=[read_b64(p) for p in args.reference] or None,
        source_video=read_b64(args.source_video) if args.source_video else None,
        seed=args.seed,
        model=args.model,
    )


def format_record(record) -> str:
    remote = record.remote_name or "-"
    line = f"{record.id}  {record.kind:<14} {record.status:<10} {record.created_at:%Y-%m-%d %H:%M:%S}  {remote}"
    if record.is_video and record.status == "processing" and record.progress_percent is not None:
        line += f"  {round(record.progress_percent * 100)}%"
    if record.error:
        line += f"  error: {record.error}"
    return line


def print_records(records) -> None:
    if not records:
        print("Queue is empty.")
        return
    for record in records:
        print(format_record(record))


async def run_queue_command(args, config, parser) -> int:
    """Run a submit/queue subcommand against a live manager. Returns exit code."""
    client = build_client(config)
    store = SQLiteRecordStore(config.storage.db_path)
    canvas = CanvasState()
    manager = build_manager(config, store, client, canvas=canvas)
    try:
        if args.command == "submit":
            request = build_image_request(args) if args.kind == "image" else build_video_request(args)
            record_id = await manager.create_and_submit(request)
            await manager.drain()
            record = await manager.get(record_id)
            print(format_record(record))
            return 1 if record.status == "failed" else 0

        if args.queue_command == "list":
            print_records(await manager.list_all())

        elif args.queue_command == "show":
            record = await manager.select(args.id)
            if record is None:
                print(f"No queued request with id {args.id}")
                return 1
            print(format_record(record))
            if args.output and not canvas.is_empty:
                for path in canvas.export(args.output):
                    print(f"  wrote {path}")

        elif args.queue_command == "refresh":
            await manager.list_all()
            print_records(await manager.refresh_all(show_progress=True))

        elif args.queue_command == "delete":
            await manager.delete(args.id)
            print(f"Deleted {args.id}")

        elif args.queue_command == "retry":
            retried = await manager.retry(args.id)
            print(f"Retried {len(retried)} pending request(s)")
            print_records(retried)

        elif args.queue_command == "watch":
            scheduler = RefreshScheduler(manager, interval_s=args.interval or config.polling.interval_s)
            scheduler.start(max_ticks=args.ticks)
            try:
                await scheduler.wait()
            finally:
                await scheduler.stop()
            print_records(manager.records)

        else:
            parser.print_help()
        return 0
    finally:
        await client.aclose()
        store.close()


async def run_immediate_command(args, config) -> int:
    """Run generate/edit/segment directly against the proxy, bypassing the queue."""
    client = build_client(config)
    try:
        if args.command == "segment":
            request = SegmentRequest(
                query=args.query,
                image=read_b64(args.image) if args.image else None,
                mask_image=read_b64(args.mask) if args.mask else None,
                model=args.model or config.generation.image_model,
                safety_settings=config.generation.safety_settings,
            )
            result = await client.segment_image(request)
            text = json.dumps(result.to_wire(), indent=2)
            if args.output:
                Path(args.output).write_text(text)
                print(f"  wrote {args.output}")
            else:
                print(text)
            return 0

        # An unsaved record yields the same payload the queue would send
        record = ImageQueueRecord.from_request(build_image_request(args))
        payload = build_image_payload(
            record, default_model=config.generation.image_model, safety_settings=config.generation.safety_settings
        )
        if record.kind == "edit":
            results = await client.edit_image(payload)
        else:
            results = await client.generate_image(payload)

        canvas = CanvasState()
        canvas.load_images(results.images)
        print(f"Received {len(results.images)} image(s)")
        if args.output and not canvas.is_empty:
            for path in canvas.export(args.output):
                print(f"  wrote {path}")
        return 0
    except RemoteJobError as e:
        print(f"error: {e}")
        return 1
    finally:
        await client.aclose()


def add_image_options(parser: argparse.ArgumentParser) -> None:
    """Options shared by queued and immediate image requests."""
    parser.add_argument("--reference", action="append", default=[], help="Reference image (repeatable)")
    parser.add_argument("--variants", type=int, default=1, help="Number of variants")
    parser.add_argument(
        "--aspect-ratio", choices=["auto", "1:1", "2:3", "3:2", "3:4", "4:3", "9:16", "16:9"], help="Aspect ratio"
    )
    parser.add_argument("--resolution-tier", choices=["1K", "2K", "4K"], help="Output size tier")
    parser.add_argument("--temperature", type=float, help="Sampling temperature (0-2)")
    parser.add_argument("--seed", type=int, help="Random seed")
    parser.add_argument("--model", type=str, help="Image model override")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="nano-studio: queued Gemini image and Veo video generation")
    parser.add_argument("--db", type=str, help="Queue database path")
    parser.add_argument("--base-url", type=str, help="Proxy base URL")
    parser.add_argument("--log-level", type=str, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # Submit
    submit_parser = subparsers.add_parser("submit", help="Queue a generation request")
    submit_subparsers = submit_parser.add_subparsers(dest="kind", help="Request kind")

    image_parser = submit_subparsers.add_parser("image", help="Generate or edit images (batch job)")
    image_parser.add_argument("--prompt", "-p", type=str, required=True, help="Prompt or edit instruction")
    image_parser.add_argument("--original", type=str, help="Image to edit (makes this an edit request)")
    image_parser.add_argument("--mask", type=str, help="Mask PNG, white = edit region (edit only)")
    add_image_options(image_parser)

    video_parser = submit_subparsers.add_parser("video", help="Generate or extend a video (operation)")
    video_parser.add_argument("--prompt", "-p", type=str, required=True, help="Prompt")
    video_parser.add_argument("--negative-prompt", type=str, help="What to avoid")
    video_parser.add_argument("--aspect-ratio", choices=["16:9", "9:16"], help="Aspect ratio")
    video_parser.add_argument("--resolution", choices=["720p", "1080p"], help="Resolution")
    video_parser.add_argument("--duration", type=int, choices=[4, 6, 8], help="Duration in seconds")
    video_parser.add_argument("--start-frame", type=str, help="First frame image")
    video_parser.add_argument("--last-frame", type=str, help="Last frame image")
    video_parser.add_argument("--reference", action="append", default=[], help="Style reference (max 3)")
    video_parser.add_argument("--source-video", type=str, help="MP4 to extend (disables frames)")
    video_parser.add_argument("--seed", type=int, help="Random seed")
    video_parser.add_argument("--model", type=str, help="Video model override")

    # Immediate calls (no queue)
    generate_parser = subparsers.add_parser("generate", help="Generate images now, without queueing")
    generate_parser.add_argument("--prompt", "-p", type=str, required=True, help="Prompt")
    add_image_options(generate_parser)
    generate_parser.add_argument("--output", "-o", type=str, help="Directory to write results into")

    edit_parser = subparsers.add_parser("edit", help="Edit an image now, without queueing")
    edit_parser.add_argument("--prompt", "-p", type=str, required=True, help="Edit instruction")
    edit_parser.add_argument("--original", type=str, required=True, help="Image to edit")
    edit_parser.add_argument("--mask", type=str, help="Mask PNG, white = edit region")
    add_image_options(edit_parser)
    edit_parser.add_argument("--output", "-o", type=str, help="Directory to write results into")

    segment_parser = subparsers.add_parser("segment", help="Ask for segmentation masks by text query")
    segment_parser.add_argument("--query", "-q", type=str, required=True, help="What to segment")
    segment_target = segment_parser.add_mutually_exclusive_group(required=True)
    segment_target.add_argument("--image", type=str, help="Image to segment")
    segment_target.add_argument("--mask", type=str, help="Existing mask to segment")
    segment_parser.add_argument("--model", type=str, help="Image model override")
    segment_parser.add_argument("--output", "-o", type=str, help="JSON file to write the answer into")

    # Queue management
    queue_parser = subparsers.add_parser("queue", help="Manage queued requests")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("list", help="List queued requests, newest first")

    show_parser = queue_subparsers.add_parser("show", help="Check a request and load its result")
    show_parser.add_argument("id", type=str, help="Record id")
    show_parser.add_argument("--output", "-o", type=str, help="Directory to write results into")

    queue_subparsers.add_parser("refresh", help="Poll every in-flight request once")

    delete_parser = queue_subparsers.add_parser("delete", help="Delete a request")
    delete_parser.add_argument("id", type=str, help="Record id")

    retry_parser = queue_subparsers.add_parser("retry", help="Re-submit requests stuck in pending")
    retry_parser.add_argument("id", type=str, nargs="?", help="Only retry this record")

    watch_parser = queue_subparsers.add_parser("watch", help="Refresh periodically")
    watch_parser.add_argument("--interval", type=float, help="Seconds between refreshes")
    watch_parser.add_argument("--ticks", type=int, help="Stop after N refreshes")

    # Proxy
    serve_parser = subparsers.add_parser("serve", help="Run the API proxy")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Port (default: $PORT or 3001)")

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    try:
        config = resolve_config({k: v for k, v in vars(args).items() if v is not None})
    except ConfigError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)

    configure_logging(config.logging.level, json_format=config.logging.json_format)

    if args.command == "serve":
        from .api.main import serve

        serve(host=args.host, port=args.port)
        return

    if args.command == "submit" and args.kind is None:
        parser.parse_args(["submit", "--help"])
    if args.command == "queue" and args.queue_command is None:
        parser.parse_args(["queue", "--help"])

    if args.command in ("generate", "edit", "segment"):
        exit_code = asyncio.run(run_immediate_command(args, config))
    else:
        exit_code = asyncio.run(run_queue_command(args, config, parser))
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
