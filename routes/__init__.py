"""
API route modules.

Each module defines routes for one domain area.
"""

from routes.import_jobs import router as import_jobs_router
from routes.drafts import router as drafts_router

__all__ = [
    "import_jobs_router",
    "drafts_router",
]
