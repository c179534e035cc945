"""HLS Pipeline worker.

Transcodes uploaded source videos into HTTP Live Streaming packages and
publishes them to object storage, tracking progress on the asset record.

Modules:
    - core: Configuration, database, storage, Celery, logging, tracing, metrics
    - modules.asset: Asset records and the asset state tracker
    - modules.job: Transcode job records and the job dispatcher
    - modules.transcoding: Workspace, fetch, transcode, manifest and publish stages
"""

__version__ = "0.1.0"
