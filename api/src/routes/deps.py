"""
Shared route dependencies.
"""

import logging
from typing import Any, Dict

from fastapi import HTTPException

from api.src.config import get_settings
from api.src.services.pipeline_parser import load_pipeline_file, PipelineConfigError

logger = logging.getLogger(__name__)

def get_pipeline_definition() -> Dict[str, Any]:
    """Load the validated pipeline definition the API admits runs for."""
    settings = get_settings()
    try:
        return load_pipeline_file(settings.pipeline_file)
    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline definition: {e}")
        raise HTTPException(status_code=500, detail=f"Invalid pipeline definition: {e}")
