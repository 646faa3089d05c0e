"""
Content Service Client

Articles, template compilation and the active subscriber list, all served
by content_service.
"""

import logging
from typing import Any, Dict, List

import httpx

from ..models import CompiledTemplate, Recipient

logger = logging.getLogger(__name__)


class ContentClient:
    """Client for content_service"""

    def __init__(self, base_url: str = "http://localhost:8260", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _get(self, path: str, **params) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}{path}", params=params or None)
            response.raise_for_status()
            return response.json()

    # ====================
    # Content Source
    # ====================

    async def current_article_set(self) -> List[str]:
        """Featured article first, then the latest ones, by ID"""
        try:
            data = await self._get("/api/v1/newsletter/articles")
        except httpx.HTTPError as e:
            logger.error(f"Error fetching newsletter articles: {e}")
            raise

        featured = data.get("featured")
        article_ids = [featured["id"]] if featured else []
        article_ids.extend(a["id"] for a in data.get("latest", []))
        return article_ids

    # ====================
    # Template Compiler
    # ====================

    async def compile(self, template_id: str, variables: Dict[str, Any]) -> CompiledTemplate:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/email-templates/{template_id}/compile",
                    json={"variables": variables},
                )
                response.raise_for_status()
                return CompiledTemplate(**response.json())

        except httpx.HTTPStatusError as e:
            logger.error(f"Error compiling template {template_id}: {e.response.text}")
            raise

    # ====================
    # Recipient Source
    # ====================

    async def active_recipients(self) -> List[Recipient]:
        """Active subscribers; suppressed addresses are already excluded upstream"""
        try:
            data = await self._get("/api/v1/newsletter/subscribers", status="active")
        except httpx.HTTPError as e:
            logger.error(f"Error fetching subscribers: {e}")
            raise

        return [
            Recipient(recipient_id=s["id"], email=s["email"], name=s.get("name"))
            for s in data.get("subscribers", [])
        ]

    async def segment_count(self) -> int:
        data = await self._get("/api/v1/newsletter/segments")
        return int(data.get("total", 0))

    async def health_check(self) -> bool:
        """Check if content_service is healthy"""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/health")
                return response.status_code == 200
        except httpx.HTTPError:
            return False


__all__ = ["ContentClient"]
