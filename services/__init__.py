"""
Business logic services.

Each service handles one stage or store of the import pipeline.
"""

from services.draft_service import DraftService, get_draft_service
from services.import_job_service import ImportJobService, get_import_job_service
from services.storage_service import StorageService, get_storage_service
from services.master_list_service import MasterListService, get_master_list_service
from services.enrichment_service import (
    EnrichmentService,
    get_enrichment_service,
    EnrichmentSuccess,
    EnrichmentValidationFailed,
    EnrichmentProviderError,
    RowEnrichment,
)
from services.image_service import ImageService, get_image_service
from services.import_pipeline_service import ImportPipelineService, get_import_pipeline_service

__all__ = [
    "DraftService",
    "get_draft_service",
    "ImportJobService",
    "get_import_job_service",
    "StorageService",
    "get_storage_service",
    "MasterListService",
    "get_master_list_service",
    "EnrichmentService",
    "get_enrichment_service",
    "EnrichmentSuccess",
    "EnrichmentValidationFailed",
    "EnrichmentProviderError",
    "RowEnrichment",
    "ImageService",
    "get_image_service",
    "ImportPipelineService",
    "get_import_pipeline_service",
]
