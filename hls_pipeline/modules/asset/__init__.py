"""Asset module: asset records and the processing state tracker."""

from hls_pipeline.modules.asset.models import Asset, AssetType, ProcessingStatus
from hls_pipeline.modules.asset.repository import AssetRepository
from hls_pipeline.modules.asset.service import AssetStateTracker

__all__ = [
    "Asset",
    "AssetType",
    "ProcessingStatus",
    "AssetRepository",
    "AssetStateTracker",
]
