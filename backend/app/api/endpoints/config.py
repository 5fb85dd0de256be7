from __future__ import annotations

from typing import Any, Dict

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.core.config import settings

router = APIRouter()
logger = structlog.get_logger(__name__)


def _public_config() -> Dict[str, Any]:
    """Quiz shape and polling cadence the client needs; no upstream URLs."""
    gen = settings.generation
    return {
        "quiz": {
            "totalQuestions": gen.total_questions,
            "defaultVariant": settings.default_variant,
            "variants": {
                name: {
                    "split": v.split.model_dump(),
                    "progressIndicator": v.progress_indicator,
                    "exposesCodeImage": v.expose_code_image,
                }
                for name, v in settings.variants.items()
            },
        },
        "generation": {
            "pollTimeoutSeconds": gen.poll_timeout_s,
            "pollIntervalSeconds": gen.poll_interval_s,
        },
        "scoring": {
            "bands": [b.model_dump() for b in settings.scoring.bands],
            "defaultLabel": settings.scoring.default_label,
        },
    }


@router.get("/config")
def get_app_config() -> JSONResponse:
    config = _public_config()
    logger.info("Frontend config served", variants=list(config["quiz"]["variants"].keys()))
    return JSONResponse(content=config)
