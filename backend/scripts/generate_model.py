from __future__ import annotations

import argparse
import mimetypes
import signal
import sys
import threading
from pathlib import Path

from threedgen.client.poller import PollingCancelled, PollingTimeout, StatusClient, poll_job
from threedgen.logger import logger
from threedgen.services.progress import status_message


def _read_files(paths: list[str]) -> list[tuple[str, bytes, str]]:
    files = []
    for raw in paths:
        path = Path(raw)
        content_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
        files.append((path.name, path.read_bytes(), content_type))
    return files


def _print_progress(progress: int, status: str, job: dict) -> None:
    print(f"[{progress:3d}%] {status_message(status, progress)}", flush=True)


def generate(args: argparse.Namespace) -> int:
    client = StatusClient(args.base_url)

    if args.job_id:
        job_id = args.job_id
    else:
        if len(args.images) != 4:
            raise SystemExit("Exactly 4 images are required (or pass --job-id to resume polling).")
        created = client.create_job(
            _read_files(args.images),
            {
                "caption": args.caption,
                "steps": args.steps,
                "guidance_scale": args.guidance_scale,
                "octree_resolution": args.octree_resolution,
            },
            user_id=args.user_id,
            session_id=args.session_id,
        )
        job_id = created["job_id"]
        print(f"Created job {job_id}", flush=True)

    cancel_event = threading.Event()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel_event.set())

    try:
        job = poll_job(
            job_id,
            on_progress=_print_progress,
            cancel_event=cancel_event,
            fetch_status=client.get_job,
            interval=args.interval,
            max_attempts=args.max_attempts,
        )
    except PollingCancelled:
        print(f"Stopped waiting for job {job_id}; it keeps running on the server.", file=sys.stderr)
        return 130
    except PollingTimeout as e:
        logger.error(str(e), extra={"job_id": job_id})
        print(str(e), file=sys.stderr)
        return 2
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if job["status"] == "failed":
        print(f"3D model generation failed: {job.get('error_message') or 'unknown error'}", file=sys.stderr)
        return 1

    print(job["model_url"])
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Submit four photos for 3D generation and wait for the model URL.",
    )
    parser.add_argument("images", nargs="*", help="Exactly four image files (front view first).")
    parser.add_argument("--base-url", default="http://localhost:8000", help="API base URL.")
    parser.add_argument("--job-id", help="Poll an existing job instead of creating one.")
    parser.add_argument("--caption", default="")
    parser.add_argument("--steps", type=int, default=20)
    parser.add_argument("--guidance-scale", type=float, default=7.5)
    parser.add_argument("--octree-resolution", default="256")
    parser.add_argument("--user-id")
    parser.add_argument("--session-id")
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between status checks.")
    parser.add_argument("--max-attempts", type=int, default=60)
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    raise SystemExit(generate(args))


if __name__ == "__main__":
    main()
