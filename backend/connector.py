"""
Downstream Connector — field directory lookup and timer-done field update.

The downstream service owns contacts and their custom fields. Two calls:
  lookup_field_id(location_id)   GET  /locations/{location_id}/customFields
  update_field(...)              PUT  /contacts/{entity_id}

update_field is a plain PUT of one field value and is safe to repeat;
workers rely on that when a message is redelivered.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import DownstreamConfig, get_settings
from models.errors import DownstreamUpdateError

logger = structlog.get_logger()


def _is_transient(exc: BaseException) -> bool:
    """Retry transport errors and 5xx; 4xx will not get better."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def find_field_id(payload: Any, field_name: str) -> Optional[str]:
    """Pick the named custom field out of a list or {"customFields": [...]}."""
    fields = payload if isinstance(payload, list) else (payload or {}).get("customFields") or []
    wanted = field_name.lower()
    for f in fields:
        if isinstance(f, dict) and str(f.get("name") or "").lower() == wanted:
            return str(f["id"]) if f.get("id") is not None else None
    return None


class DownstreamConnector(abc.ABC):
    """Abstract base for all downstream connectors."""

    @abc.abstractmethod
    async def lookup_field_id(self, location_id: str) -> Optional[str]:
        """Return the timer field id for a location, or None if it has none."""
        ...

    @abc.abstractmethod
    async def update_field(self, entity_id: str, location_id: str, field_id: str, value: str) -> None:
        """Set the field on the entity. Raises DownstreamUpdateError on failure."""
        ...

    async def close(self):
        pass


class RESTDownstreamConnector(DownstreamConnector):
    """REST connector for the contact/custom-field proxy."""

    def __init__(self, config: DownstreamConfig = None):
        self.config = config or get_settings().downstream
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"Authorization": self.config.api_key},
                timeout=self.config.timeout,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def _request(self, method: str, url: str, location_id: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        response = await client.request(method, url, headers={"LocationId": location_id}, **kwargs)
        response.raise_for_status()
        return response

    async def lookup_field_id(self, location_id: str) -> Optional[str]:
        response = await self._request("GET", f"/locations/{location_id}/customFields", location_id)
        field_id = find_field_id(response.json(), self.config.field_name)
        logger.info("downstream_field_lookup",
                    location_id=location_id,
                    field_name=self.config.field_name,
                    found=field_id is not None)
        return field_id

    async def update_field(self, entity_id: str, location_id: str, field_id: str, value: str) -> None:
        try:
            await self._request(
                "PUT", f"/contacts/{entity_id}", location_id,
                json={"customFields": [{"id": field_id, "field_value": value}]},
            )
        except httpx.HTTPStatusError as e:
            raise DownstreamUpdateError(e.response.status_code, e.response.text) from e
        except httpx.HTTPError as e:
            raise DownstreamUpdateError(None, str(e)) from e
        logger.info("downstream_field_updated", entity_id=entity_id, location_id=location_id)

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockDownstreamConnector(DownstreamConnector):
    """
    Mock downstream for development and testing.
    Keeps field values per (entity, field) so repeated updates are observable
    as idempotent, and records every call in order.
    """

    def __init__(self, fields: dict[str, str] = None, field_id: str = "fld_timerdone"):
        self.fields = fields                    # location_id → field_id; None means "any location"
        self.default_field_id = field_id
        self.values: dict[tuple[str, str], str] = {}
        self.updates: list[dict[str, str]] = []
        self.lookups: list[str] = []
        self.fail_entities: dict[str, int] = {}   # entity_id → failures left (-1 forever)

    async def lookup_field_id(self, location_id: str) -> Optional[str]:
        self.lookups.append(location_id)
        if self.fields is None:
            return self.default_field_id
        return self.fields.get(location_id)

    async def update_field(self, entity_id: str, location_id: str, field_id: str, value: str) -> None:
        remaining = self.fail_entities.get(entity_id, 0)
        if remaining:
            if remaining > 0:
                self.fail_entities[entity_id] = remaining - 1
            raise DownstreamUpdateError(503, "mock failure")
        self.updates.append({
            "entity_id": entity_id, "location_id": location_id,
            "field_id": field_id, "value": value,
        })
        self.values[(entity_id, field_id)] = value
        logger.info("mock_downstream_update", entity_id=entity_id, field_id=field_id)


def create_downstream_connector(config: DownstreamConfig = None) -> DownstreamConnector:
    """Factory function to create the appropriate downstream connector."""
    config = config or get_settings().downstream
    if config.type == "rest" and config.base_url:
        return RESTDownstreamConnector(config)
    logger.warning("using_mock_downstream", reason="no downstream configured or base_url empty")
    return MockDownstreamConnector()
