#!/usr/bin/env python3
"""
ReelQueue CLI - run workers and manage transcoding jobs.
"""

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path

from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from api.database import create_status_mirror, create_tables
from api.errors import InfrastructureError, JobAlreadyExists, truncate_error
from api.jobs import create_job_service
from api.pubsub import subscribe_to_job
from api.redis_client import RedisClient
from config import (
    DATABASE_URL,
    ERROR_SUMMARY_MAX_LENGTH,
    JOB_BACKEND,
    MAX_SOURCE_SIZE,
    WORKER_CONCURRENCY,
    WORKER_HEALTH_PORT,
)


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def validate_file(file_path: Path) -> int:
    """
    Validate the source file exists, is non-empty and within the size limit.

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If the file can't be submitted
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")
    if file_size > MAX_SOURCE_SIZE:
        raise CLIError(
            f"File too large ({file_size / (1024**3):.2f} GB). "
            f"Maximum source size is {MAX_SOURCE_SIZE / (1024**3):.0f} GB"
        )
    return file_size


def require_shared_backend() -> None:
    """Job commands talk to workers in other processes; the memory backend can't reach them."""
    if JOB_BACKEND == "memory":
        raise CLIError("REELQUEUE_JOB_BACKEND=memory is process-local; job commands need the redis backend")


def run(coro):
    """Run a coroutine and release the shared Redis connection afterwards."""

    async def _wrapped():
        try:
            return await coro
        finally:
            await RedisClient.reset_instance()

    return asyncio.run(_wrapped())


def fail(message: str) -> None:
    print(f"Error: {message}")
    sys.exit(1)


def cmd_worker(args):
    """Run the worker pool in the foreground."""
    from worker.daemon import configure_logging, run_worker

    configure_logging()
    try:
        asyncio.run(run_worker(concurrency=args.concurrency, health_port=args.health_port))
    except KeyboardInterrupt:
        pass


def cmd_enqueue(args):
    """Submit a source file for transcoding."""
    file_path = Path(args.file)
    job_id = args.job_id or uuid.uuid4().hex
    try:
        require_shared_backend()
        file_size = validate_file(file_path)
        service = create_job_service()

        async def _enqueue():
            await service.mirror.connect()
            try:
                return await service.enqueue(job_id, str(file_path), args.owner)
            finally:
                await service.mirror.disconnect()

        job = run(_enqueue())
        print("Job queued successfully!")
        print(f"  Job ID: {job.id}")
        print(f"  Owner: {job.owner_id}")
        print(f"  Source: {job.original_name} ({file_size / (1024 * 1024):.1f} MB)")
        print()
        print(f"Follow progress with: reelqueue watch {job.id}")
    except JobAlreadyExists as e:
        fail(str(e))
    except InfrastructureError as e:
        fail(f"Job backend unavailable: {e}")
    except CLIError as e:
        fail(str(e))


def cmd_cancel(args):
    """Request cancellation of a queued or processing job."""
    try:
        require_shared_backend()
        service = create_job_service()
        accepted = run(service.request_cancel(args.job_id))
    except InfrastructureError as e:
        fail(f"Job backend unavailable: {e}")
    except CLIError as e:
        fail(str(e))

    if accepted:
        print(f"Cancellation requested for job {args.job_id}")
    else:
        fail(f"Job {args.job_id} not found or already finished")


def print_job(job: dict) -> None:
    print(f"Job {job['id']}")
    print(f"  Status:   {job['status']}")
    print(f"  Owner:    {job['owner_id']}")
    print(f"  Source:   {job.get('original_name') or '-'}")
    print(f"  Progress: {job.get('progress_percent', 0)}%  {job.get('progress_message') or ''}")
    if job.get("error_message"):
        print(f"  Error:    {truncate_error(job['error_message'], ERROR_SUMMARY_MAX_LENGTH)}")
    if job.get("cancel_requested"):
        print("  Cancellation requested")

    urls = [a for a in job.get("artifacts", []) if a.get("kind") == "rendition"]
    if urls:
        print("  Renditions:")
        for artifact in urls:
            print(f"    {artifact['name']:<8} {artifact.get('url') or artifact['path']}")
    elif job.get("rendition_urls"):
        # Mirror rows store the mapping as JSON text
        mapping = job["rendition_urls"]
        if isinstance(mapping, str):
            mapping = json.loads(mapping)
        print("  Renditions:")
        for name, url in mapping.items():
            print(f"    {name:<8} {url}")
    if job.get("thumbnail_url"):
        print(f"  Thumbnail: {job['thumbnail_url']}")


def cmd_status(args):
    """Show one job, falling back to the database mirror once the store entry has expired."""
    try:
        require_shared_backend()
        service = create_job_service()

        async def _lookup():
            job = await service.get_status(args.job_id)
            if job is not None:
                return job.to_dict()
            mirror = create_status_mirror(DATABASE_URL)
            await mirror.connect()
            try:
                return await mirror.fetch(args.job_id)
            finally:
                await mirror.disconnect()

        job = run(_lookup())
    except InfrastructureError as e:
        fail(f"Job backend unavailable: {e}")
    except CLIError as e:
        fail(str(e))

    if job is None:
        fail(f"Job {args.job_id} not found")
    print_job(job)


def cmd_queue(args):
    """Show queue depth and every queued or processing job."""
    try:
        require_shared_backend()
        service = create_job_service()
        snapshot = run(service.get_queue_snapshot())
    except InfrastructureError as e:
        fail(f"Job backend unavailable: {e}")
    except CLIError as e:
        fail(str(e))

    print(f"Queue length: {snapshot['length']}")
    jobs = snapshot["active_jobs"]
    if not jobs:
        print("No active jobs.")
        return

    print()
    print(f"{'Job ID':<34} {'Status':<12} {'Progress':<9} {'Owner':<15} {'Source':<30}")
    print("-" * 104)
    for job in sorted(jobs, key=lambda j: j.created_at):
        name = job.original_name or "-"
        name = name[:28] + ".." if len(name) > 30 else name
        owner = job.owner_id[:13] + ".." if len(job.owner_id) > 15 else job.owner_id
        progress = f"{job.progress_percent}%"
        print(f"{job.id:<34} {job.status.value:<12} {progress:<9} {owner:<15} {name:<30}")


async def watch_job(job_id: str) -> dict:
    """Render live progress for one job until a final event arrives."""
    subscriber = await subscribe_to_job(job_id)
    if not subscriber.is_active:
        raise CLIError("Could not subscribe to progress events (is Redis reachable?)")

    final = {}
    try:
        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TextColumn("{task.fields[message]}"),
            TimeElapsedColumn(),
        ) as progress:
            task_id = progress.add_task(job_id[:12], total=100, message="waiting")
            async for event in subscriber.listen():
                if event.get("job_id") != job_id:
                    continue
                progress.update(
                    task_id,
                    completed=event.get("progress_percent", 0),
                    message=event.get("message", ""),
                )
                if event.get("type") != "progress":
                    final = event
                    break
    finally:
        await subscriber.close()
    return final


def cmd_watch(args):
    """Follow a job's progress events."""
    try:
        require_shared_backend()
        final = run(watch_job(args.job_id))
    except CLIError as e:
        fail(str(e))
    except KeyboardInterrupt:
        return

    status = final.get("status", "unknown")
    print(f"Job {args.job_id} finished: {status}")
    if final.get("error"):
        print(f"  Error: {final['error']}")
    for rendition in final.get("renditions") or []:
        print(f"  {rendition['name']:<8} {rendition['url']}")
    if final.get("thumbnail_url"):
        print(f"  Thumbnail: {final['thumbnail_url']}")
    if status != "ready":
        sys.exit(1)


def cmd_init_db(args):
    """Create the status mirror tables."""
    url = args.database_url or DATABASE_URL
    if not url:
        fail("No database configured (set REELQUEUE_DATABASE_URL or pass --database-url)")
    create_tables(url)
    print("Status mirror tables created.")


def main():
    parser = argparse.ArgumentParser(prog="reelqueue", description="ReelQueue - video transcoding job queue")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Run the transcoding worker pool")
    worker_parser.add_argument(
        "-c", "--concurrency", type=positive_int, default=WORKER_CONCURRENCY, help="Number of concurrent jobs"
    )
    worker_parser.add_argument(
        "--health-port", type=int, default=WORKER_HEALTH_PORT, help="Health server port (0 disables it)"
    )
    worker_parser.set_defaults(func=cmd_worker)

    # Enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Submit a video file for transcoding")
    enqueue_parser.add_argument("file", help="Source video file (moved into the inbox)")
    enqueue_parser.add_argument("-j", "--job-id", help="Job ID (default: random)")
    enqueue_parser.add_argument("-o", "--owner", default="cli", help="Owner ID for status notifications")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    # Cancel command
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a queued or processing job")
    cancel_parser.add_argument("job_id", help="Job ID to cancel")
    cancel_parser.set_defaults(func=cmd_cancel)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show a job's status")
    status_parser.add_argument("job_id", help="Job ID")
    status_parser.set_defaults(func=cmd_status)

    # Queue command
    queue_parser = subparsers.add_parser("queue", help="Show queue depth and active jobs")
    queue_parser.set_defaults(func=cmd_queue)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Follow a job's progress live")
    watch_parser.add_argument("job_id", help="Job ID")
    watch_parser.set_defaults(func=cmd_watch)

    # Database setup
    init_parser = subparsers.add_parser("init-db", help="Create the status mirror tables")
    init_parser.add_argument("--database-url", help="Override REELQUEUE_DATABASE_URL")
    init_parser.set_defaults(func=cmd_init_db)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
