"""Anthropic SDK adapters for the injected inference callbacks.

The extraction and insights clients only know two plain callables:
  text_fn(system, prompt) -> str
  document_fn(system, prompt, data, media_type) -> str
This module builds them from the Anthropic SDK. Each call is a single
request bounded by the configured timeout; SDK retries are disabled so a
failed call surfaces straight away as ExtractionServiceError.
"""

from __future__ import annotations

import base64
import logging
import os

import anthropic

from spendlens.config import Config
from spendlens.errors import ExtractionServiceError

logger = logging.getLogger(__name__)


def _make_client(config: Config) -> anthropic.Anthropic | None:
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None
    return anthropic.Anthropic(
        api_key=api_key,
        timeout=config.timeout_seconds,
        max_retries=0,
    )


def document_block(data: bytes, media_type: str) -> dict:
    """Content block for a statement document: PDFs as documents, else images."""
    source = {
        "type": "base64",
        "media_type": media_type,
        "data": base64.standard_b64encode(data).decode("ascii"),
    }
    block_type = "document" if media_type == "application/pdf" else "image"
    return {"type": block_type, "source": source}


def response_text(response) -> str:
    """Concatenate the text blocks of a messages response."""
    return "".join(
        block.text for block in response.content
        if getattr(block, "type", None) == "text"
    )


def _create(client: anthropic.Anthropic, **kwargs) -> str:
    try:
        response = client.messages.create(**kwargs)
    except anthropic.APIStatusError as e:
        raise ExtractionServiceError(
            f"Inference service returned an error: {e.message}",
            status=e.status_code,
        ) from e
    except anthropic.APIConnectionError as e:
        # Also covers APITimeoutError
        raise ExtractionServiceError(f"Inference service unreachable: {e}") from e
    return response_text(response)


def make_text_fn(config: Config):
    """Create a text callback for insights generation.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    client = _make_client(config)
    if client is None:
        return None

    def text_fn(system: str, prompt: str) -> str:
        return _create(
            client,
            model=config.insights_model,
            max_tokens=config.max_tokens,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )

    return text_fn


def make_document_fn(config: Config):
    """Create a document callback for statement extraction.

    Returns a callable (system, prompt, data, media_type) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    client = _make_client(config)
    if client is None:
        return None

    def document_fn(system: str, prompt: str, data: bytes, media_type: str) -> str:
        return _create(
            client,
            model=config.extraction_model,
            max_tokens=config.max_tokens,
            system=system,
            messages=[{
                "role": "user",
                "content": [
                    document_block(data, media_type),
                    {"type": "text", "text": prompt},
                ],
            }],
        )

    return document_fn
