"""Operator command line for the HLS pipeline.

Usage:
  hls-pipeline init-db                               # Create tables
  hls-pipeline register NAME SOURCE_KEY              # Create an asset and enqueue it
  hls-pipeline enqueue ASSET_ID [--source-key KEY]   # Enqueue an existing asset
  hls-pipeline cancel JOB_ID                         # Cancel a job
  hls-pipeline sweep                                 # Run one repair sweep
  hls-pipeline status ASSET_ID                       # Show asset and latest job
"""

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from hls_pipeline.core.celery_app import create_celery_app
from hls_pipeline.core.config import Settings, get_settings
from hls_pipeline.core.database import init_models
from hls_pipeline.core.logging import setup_logging
from hls_pipeline.modules.asset.models import AssetType
from hls_pipeline.modules.asset.repository import AssetRepository
from hls_pipeline.modules.job.models import JobStatus
from hls_pipeline.modules.job.repository import JobRepository
from hls_pipeline.modules.job.schemas import AssetStatusInfo, EnqueueResponse, JobInfo
from hls_pipeline.modules.job.service import CancelOutcome
from hls_pipeline.runtime import PipelineRuntime


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hls-pipeline", description="HLS packaging pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    register = sub.add_parser("register", help="Create a video asset and enqueue it")
    register.add_argument("name", help="Asset display name")
    register.add_argument("source_key", help="Storage key of the uploaded source")
    register.add_argument("--content-type", default="video/mp4")
    register.add_argument("--user-id", default=None)

    enqueue = sub.add_parser("enqueue", help="Enqueue a transcode job for an asset")
    enqueue.add_argument("asset_id", type=int)
    enqueue.add_argument("--source-key", default=None, help="Defaults to the asset's stored key")

    cancel = sub.add_parser("cancel", help="Cancel a transcode job")
    cancel.add_argument("job_id")

    sub.add_parser("sweep", help="Run one repair sweep")

    status = sub.add_parser("status", help="Show asset processing status")
    status.add_argument("asset_id", type=int)

    return parser


def _print(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    runtime = PipelineRuntime.from_settings(settings, create_celery_app(settings))
    try:
        if args.command == "init-db":
            await init_models(runtime.engine)
            _print({"status": "ok", "message": "Tables created"})
            return 0

        if args.command == "register":
            async with runtime.session_factory() as session:
                asset = await AssetRepository(session).create(
                    asset_name=args.name,
                    source_url=runtime.storage.public_url(args.source_key),
                    asset_type=AssetType.VIDEO,
                    storage_key=args.source_key,
                    content_type=args.content_type,
                    user_id=args.user_id,
                )
                await session.commit()
            job = await runtime.dispatcher.enqueue(asset.id, args.source_key)
            _print(EnqueueResponse(
                job_id=job.id,
                asset_id=asset.id,
                status=JobStatus.QUEUED,
                message="Asset registered",
            ).model_dump())
            return 0

        if args.command == "enqueue":
            asset = await runtime.tracker.get(args.asset_id)
            if asset is None:
                _print({"status": "error", "message": f"Asset {args.asset_id} not found"})
                return 1
            if not asset.is_video():
                _print({"status": "error", "message": f"Asset {asset.id} is not a video"})
                return 1
            source_key = (
                args.source_key
                or asset.storage_key
                or runtime.storage.storage_key_from_url(asset.source_url)
            )
            if not source_key:
                _print({"status": "error", "message": "Cannot derive the source key"})
                return 1
            job = await runtime.dispatcher.enqueue(asset.id, source_key)
            _print(EnqueueResponse(
                job_id=job.id,
                asset_id=asset.id,
                status=JobStatus.QUEUED,
                message="Job enqueued",
            ).model_dump())
            return 0

        if args.command == "cancel":
            outcome = await runtime.dispatcher.cancel(args.job_id)
            _print({"job_id": args.job_id, "outcome": outcome.value})
            return 1 if outcome == CancelOutcome.NOT_FOUND else 0

        if args.command == "sweep":
            summary = await runtime.dispatcher.sweep()
            _print({
                "stale_jobs_dead": summary.stale_jobs_dead,
                "redelivered_jobs": summary.redelivered_jobs,
                "pending_enqueued": summary.pending_enqueued,
                "stale_assets_requeued": summary.stale_assets_requeued,
                "assets_failed": summary.assets_failed,
                "job_ids": summary.job_ids,
            })
            return 0

        if args.command == "status":
            async with runtime.session_factory() as session:
                asset = await AssetRepository(session).get_by_id(args.asset_id)
                if asset is None:
                    _print({"status": "error", "message": f"Asset {args.asset_id} not found"})
                    return 1
                job = await JobRepository(session).latest_for_asset(asset.id)
            info = AssetStatusInfo.model_validate(asset)
            if job is not None:
                info.latest_job = JobInfo.model_validate(job)
            _print(info.model_dump(mode="json"))
            return 0

        return 2
    finally:
        await runtime.aclose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
