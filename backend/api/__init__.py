"""
API Route modules.

- lab_uploads: job creation, processing trigger, polling, NDJSON stream
- standards: biomarker standards listing
"""

from backend.api.lab_uploads import router as lab_uploads_router
from backend.api.standards import router as standards_router

__all__ = [
    'lab_uploads_router',
    'standards_router',
]
