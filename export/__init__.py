from .progress import ExportProgressCache
from .streamer import BulkExportStreamer, DirectExport, build_manifest

__all__ = ["BulkExportStreamer", "DirectExport", "ExportProgressCache", "build_manifest"]
