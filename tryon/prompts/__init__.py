"""Prompt templates for try-on synthesis and captioning."""

from tryon.prompts.tryon import (
    MIN_CAPTION_LENGTH,
    SYNTHESIS_PROMPT,
    get_caption_prompt,
)

__all__ = ["MIN_CAPTION_LENGTH", "SYNTHESIS_PROMPT", "get_caption_prompt"]
