"""safeingest API package.

An optional FastAPI service layer over the ingestion pipeline: uploads go in,
FileRecords come out. No ingestion logic lives here.
"""

from .server import create_app  # noqa: F401
