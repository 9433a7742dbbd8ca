"""Image analysis through a vision model (Gemini via LiteLLM).

Attachments larger than ``COMPRESSION_THRESHOLD`` are re-encoded as JPEG
with Pillow before upload; anything above ``MAX_IMAGE_SIZE`` is rejected.
"""

from __future__ import annotations

import asyncio
import base64
import io
from dataclasses import dataclass

import litellm
from litellm import acompletion
from loguru import logger
from PIL import Image

from relaybot.bus.events import Attachment

MB = 1024 * 1024
COMPRESSION_THRESHOLD = 20 * MB
TARGET_SIZE = 10 * MB
MAX_IMAGE_SIZE = 100 * MB

ANALYSIS_PROMPT = """Provide a comprehensive analysis of this image. Include ALL of the following details:

1. Visual Content: Describe what is shown - people, objects, scenes, layout, composition
2. Text Content: Extract and transcribe ANY text visible including:
   - Document content, letters, emails, messages
   - Code, technical diagrams, flowcharts, UML diagrams
   - UI elements, buttons, labels, titles, headings
   - Handwritten notes, signatures, annotations
3. Technical Elements: If this contains technical content, explain:
   - Diagrams, charts, graphs, technical drawings
   - Code structure, programming concepts, system architecture
   - Data visualizations, mathematical formulas
4. Context & Purpose: What is the likely purpose or context of this image?
5. Key Information: What are the most important details someone would need to know?

Be thorough and specific. This analysis will help someone understand the complete content without seeing the image."""


@dataclass(frozen=True, slots=True)
class ImageAnalysisResult:
    success: bool
    analysis: str | None = None
    error: str | None = None


def compression_quality(size: int) -> int:
    """JPEG quality aimed at ``TARGET_SIZE``, clamped to 20..80."""
    return max(20, min(80, round(TARGET_SIZE / size * 100)))


def compress_image(data: bytes, quality: int) -> bytes:
    with Image.open(io.BytesIO(data)) as im:
        if im.mode not in ("RGB", "L"):
            im = im.convert("RGB")
        out = io.BytesIO()
        im.save(out, format="JPEG", quality=quality, progressive=True)
        return out.getvalue()


def format_for_backend(result: ImageAnalysisResult) -> str:
    """Wrap an analysis outcome in the text the backend expects for images."""
    message = "User shared an image"
    if result.success and result.analysis:
        return f"{message}\n\n[Image Analysis: {result.analysis}]"
    if result.error:
        return f"{message}\n\n[Image analysis failed: {result.error}]"
    return f"{message}\n\n[Image received but analysis unavailable]"


class VisionAnalyzer:
    def __init__(self, api_key: str = "", model: str = "gemini/gemini-2.0-flash-exp") -> None:
        self.api_key = api_key
        self.model = model
        if not api_key:
            logger.warning("Vision API key not set, image analysis is disabled")
        litellm.suppress_debug_info = True
        litellm.drop_params = True

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def prepare(self, data: bytes) -> bytes:
        """Compress oversized images; fall back to the original bytes on failure."""
        if len(data) <= COMPRESSION_THRESHOLD:
            return data
        quality = compression_quality(len(data))
        logger.info(f"Image is {len(data) // MB}MB, compressing at quality {quality}")
        try:
            compressed = await asyncio.to_thread(compress_image, data, quality)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            logger.warning(f"Compression failed, using original image: {exc}")
            return data
        logger.info(f"Compressed {len(data) // MB}MB -> {len(compressed) // MB}MB")
        return compressed

    async def analyze(self, attachment: Attachment) -> ImageAnalysisResult:
        if not self.enabled:
            return ImageAnalysisResult(success=False, error="vision API key not configured")

        size = len(attachment.data)
        if size > MAX_IMAGE_SIZE:
            return ImageAnalysisResult(
                success=False,
                error=f"Image too large: {round(size / MB)}MB (max: {MAX_IMAGE_SIZE // MB}MB)",
            )

        logger.info(f"Analyzing image {attachment.filename} ({attachment.mime_type}, {size} bytes)")
        try:
            data = await self.prepare(attachment.data)
            analysis = await self._complete(data, attachment.mime_type or "image/jpeg")
        except Exception as exc:
            logger.error(f"Image analysis failed for {attachment.filename}: {exc}")
            return ImageAnalysisResult(success=False, error=str(exc) or "Analysis failed")

        logger.info(f"Image analysis complete ({len(analysis)} chars)")
        return ImageAnalysisResult(success=True, analysis=analysis.strip())

    async def _complete(self, data: bytes, mime_type: str) -> str:
        encoded = base64.b64encode(data).decode("ascii")
        response = await acompletion(
            model=self.model,
            api_key=self.api_key,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ANALYSIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                    ],
                }
            ],
            temperature=0.4,
            top_p=1,
            top_k=32,
            max_tokens=2048,
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise RuntimeError("No analysis returned from vision model")
        content = choices[0].message.content
        if not content:
            raise RuntimeError("Empty analysis from vision model")
        return content
