"""Shared FastAPI dependencies"""
from fastapi import Depends, HTTPException, Request

from app.core.config import ProcessorConfig, build_processor_config, settings
from app.services.notifier import CrmNotifier


def get_processor_config() -> ProcessorConfig:
    """Processor configuration derived from environment settings"""
    return build_processor_config(settings)


def get_notifier(config: ProcessorConfig = Depends(get_processor_config)) -> CrmNotifier:
    return CrmNotifier(config)


def enforce_json_body_limit(request: Request) -> None:
    """Reject oversized JSON bodies before parsing"""
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > settings.MAX_JSON_BODY_BYTES:
        raise HTTPException(413, "Payload too large")
