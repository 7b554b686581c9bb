"""
Model directory: the gateway's list of backing models and the user's selection.

The list is cached for 24 hours, in memory and in settings.yaml so it
survives restarts. The selected model id is persisted as a single setting and
falls back to a well-known default when it is missing or points at a model
the gateway marks unavailable.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import ValidationError

from routerchat.core.config import (
    MODEL_CACHE_KEY,
    SELECTED_MODEL_KEY,
    ConfigManager,
    resolve_base_url,
)
from routerchat.core.credentials import CredentialStore
from routerchat.core.errors import (
    AuthError,
    InvalidCredential,
    NotFoundError,
    ProtocolError,
    RouterChatError,
    UnavailableError,
    error_from_response,
    error_from_transport,
)
from routerchat.core.gateway import GatewayClient, auth_headers
from routerchat.models.directory import Model, ModelCache

logger = logging.getLogger(__name__)

MODEL_CACHE_TTL = 24 * 60 * 60  # seconds
DEFAULT_MODEL_ID = "openai/gpt-3.5-turbo"


def parse_model_list(payload: Any) -> list[Model]:
    """
    Parse a ``{"data": [...]}`` models payload.

    Individual entries that fail validation are dropped; a payload without a
    ``data`` list is a ProtocolError.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise ProtocolError("Invalid model list response: missing 'data' array")

    models: list[Model] = []
    for entry in payload["data"]:
        try:
            models.append(Model.model_validate(entry))
        except ValidationError as e:
            logger.debug("Dropping unparseable model entry %r: %s", entry, e)
    return models


class ModelDirectory(GatewayClient):
    """
    Cached view of the gateway's models plus the persisted selection.

    Concurrent ``list_models`` calls on an expired cache may both refresh;
    the last one to finish wins.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        config: ConfigManager,
        base_url: str | None = None,
        ttl: float = MODEL_CACHE_TTL,
        default_model: str = DEFAULT_MODEL_ID,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | float | None = None,
    ):
        """
        Args:
            credentials: Source of the bearer token
            config: Settings store for the selection and the persisted cache
            base_url: Gateway base URL (resolved from config/env when None)
            ttl: Cache lifetime in seconds
            default_model: Model id used when the selection is unusable
            clock: Returns the current time in epoch seconds
            transport: Optional httpx transport (tests use MockTransport)
            timeout: httpx timeout for directory requests
        """
        super().__init__(base_url or resolve_base_url(config), transport, timeout)
        self._credentials = credentials
        self._config = config
        self.ttl = ttl
        self.default_model = default_model
        self._clock = clock
        self._cache: ModelCache | None = None
        self._cache_loaded = False

    # ── Cache ─────────────────────────────────────────────────────────

    @property
    def cache(self) -> ModelCache | None:
        """The current snapshot, loading the persisted one on first access."""
        if not self._cache_loaded:
            self._cache_loaded = True
            raw = self._config.get(MODEL_CACHE_KEY)
            if raw:
                try:
                    self._cache = ModelCache.model_validate(raw)
                except ValidationError as e:
                    logger.warning("Discarding corrupt persisted model cache: %s", e)
        return self._cache

    def _replace_cache(self, models: list[Model]) -> ModelCache:
        cache = ModelCache(models=models, fetched_at=self._clock())
        self._cache = cache
        self._cache_loaded = True
        self._config.set(MODEL_CACHE_KEY, cache.to_wire())
        return cache

    def invalidate(self) -> None:
        """Forget the cached list so the next call refetches."""
        self._cache = None
        self._cache_loaded = True
        self._config.delete(MODEL_CACHE_KEY)

    # ── Fetching ──────────────────────────────────────────────────────

    async def _get_models(self, token: str) -> httpx.Response:
        try:
            return await self.http.get(self.url("models"), headers=auth_headers(token))
        except httpx.RequestError as e:
            raise error_from_transport(e, self.base_url) from e

    async def _fetch(self, token: str) -> list[Model]:
        response = await self._get_models(token)
        if not response.is_success:
            raise error_from_response(
                response.status_code, response.content, response.reason_phrase
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise ProtocolError(
                "Invalid model list response: body is not JSON",
                status_code=response.status_code,
                original=e,
            ) from e
        return parse_model_list(payload)

    async def list_models(self) -> list[Model]:
        """
        Return the gateway's models, from cache while it is fresh.

        Raises:
            AuthError: no API key is configured, or the gateway rejected it
            TransportError: the gateway could not be reached and nothing is cached
            ProtocolError: bad status or body and nothing is cached
        """
        return list((await self._snapshot()).models)

    async def _snapshot(self) -> ModelCache:
        """The cache if fresh, else a refetched one, else a stale one on refresh failure."""
        cache = self.cache
        if cache is not None and cache.is_valid(self._clock(), self.ttl):
            return cache

        token = self._credentials.get_api_key()
        if not token:
            raise AuthError("No API key configured. Run: routerchat key set")

        try:
            models = await self._fetch(token)
        except AuthError:
            raise
        except RouterChatError as e:
            if cache is None:
                raise
            logger.warning(
                "Model list refresh failed (%s); using cached list from %s",
                e,
                time.strftime("%Y-%m-%d %H:%M", time.localtime(cache.fetched_at)),
            )
            return cache

        logger.info("Fetched %d models from %s", len(models), self.base_url)
        return self._replace_cache(models)

    async def get_model(self, model_id: str) -> Model | None:
        """Look up one model by id."""
        return (await self._snapshot()).find(model_id)

    # ── Selection ─────────────────────────────────────────────────────

    def _fallback_id(self, models: list[Model]) -> str:
        """The default id, unless the directory says the default itself is unavailable."""
        by_id = {m.id: m for m in models}
        default = by_id.get(self.default_model)
        if default is None or default.available:
            return self.default_model
        for model in models:
            if model.available:
                return model.id
        return self.default_model

    async def get_selected_model(self) -> str:
        """
        Resolve the model id to chat with.

        An absent selection returns the default without touching the network.
        If the directory cannot be read the stored id is returned unchecked.
        A selection the directory no longer lists, or marks unavailable, is
        replaced by the default for this call only; nothing is persisted.
        """
        selected = self._config.get(SELECTED_MODEL_KEY)
        if not isinstance(selected, str) or not selected.strip():
            return self.default_model

        try:
            snapshot = await self._snapshot()
        except RouterChatError as e:
            logger.warning("Could not validate selected model '%s': %s", selected, e)
            return selected

        model = snapshot.find(selected)
        if model is not None and model.available:
            return selected

        fallback = self._fallback_id(snapshot.models)
        reason = "no longer listed" if model is None else "unavailable"
        logger.warning("Selected model '%s' is %s; using '%s'", selected, reason, fallback)
        return fallback

    async def set_selected_model(self, model_id: str) -> None:
        """
        Persist a new selection.

        Raises:
            NotFoundError: the id is not in the directory
            UnavailableError: the model is unavailable; the fallback id has
                been persisted in its place
        """
        snapshot = await self._snapshot()
        model = snapshot.find(model_id)
        if model is None:
            raise NotFoundError(model_id)

        if not model.available:
            fallback = self._fallback_id(snapshot.models)
            self._config.set(SELECTED_MODEL_KEY, fallback)
            raise UnavailableError(model_id, fallback)

        self._config.set(SELECTED_MODEL_KEY, model_id)
        logger.info("Selected model set to '%s'", model_id)

    # ── Credential check ──────────────────────────────────────────────

    async def test_credential(self, token: str) -> None:
        """
        Check a bearer token against the gateway without storing anything.

        Raises:
            InvalidCredential: the token is empty or was rejected (HTTP 401)
            TransportError: the gateway could not be reached
            ProtocolError: any other non-2xx response
        """
        if not token or not token.strip():
            raise InvalidCredential("API key is empty")

        response = await self._get_models(token.strip())
        if response.status_code == 401:
            raise InvalidCredential("Invalid API key")
        if not response.is_success:
            raise error_from_response(
                response.status_code, response.content, response.reason_phrase
            )
