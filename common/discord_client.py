"""
Discord client for guild scheduled events.

REST calls (create/update/delete/lookup) go through httpx. Change
notifications arrive over the Discord Gateway WebSocket (aiohttp) and are
re-emitted to registered handlers:

- ready(user)                      gateway session established
- error(exception)                 gateway session failed
- throttled(info)                  a REST call hit a 429
- scheduled_event_create(event)
- scheduled_event_update(old, new) old is None when it was not cached
- scheduled_event_delete(event)

Handlers are coroutines. Each emit schedules them as tasks on the running
loop so the gateway reader never blocks on sync work.
"""

import json
import random
import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, DefaultDict, Dict, List, Optional, Set

import aiohttp
import httpx

from common.errors import ConfigurationError, RateLimitedError, StaleReferenceError, TransientError

logger = logging.getLogger("DiscordClient")

DISCORD_API_BASE = "https://discord.com/api/v10"
DISCORD_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"

# Discord Gateway opcodes
GATEWAY_OPCODE_DISPATCH = 0
GATEWAY_OPCODE_HEARTBEAT = 1
GATEWAY_OPCODE_IDENTIFY = 2
GATEWAY_OPCODE_RECONNECT = 7
GATEWAY_OPCODE_INVALID_SESSION = 9
GATEWAY_OPCODE_HELLO = 10
GATEWAY_OPCODE_HEARTBEAT_ACK = 11

INTENT_GUILDS = 1 << 0
INTENT_GUILD_SCHEDULED_EVENTS = 1 << 16

# Scheduled event enums
PRIVACY_LEVEL_GUILD_ONLY = 2
ENTITY_TYPE_EXTERNAL = 3

Handler = Callable[..., Awaitable[Any]]


class DiscordClient:

    def __init__(
        self,
        token: Optional[str],
        guild_id: Optional[str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.guild_id = str(guild_id) if guild_id is not None else None
        self.user: Optional[Dict[str, Any]] = None

        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._events_cache: Dict[str, Dict[str, Any]] = {}
        self._dispatch_tasks: Set[asyncio.Task] = set()

        # Gateway state
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._gateway_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._sequence: Optional[int] = None
        self._running = False
        self._connected = False
        self._consecutive_failures = 0

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> Optional[str]:
        return str(self.user["id"]) if self.user and self.user.get("id") else None

    @property
    def is_ready(self) -> bool:
        return self._connected and self.user is not None

    @property
    def cached_event_count(self) -> int:
        return len(self._events_cache)

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers.get(event, []):
            task = asyncio.get_running_loop().create_task(self._invoke(event, handler, args))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)

    async def _invoke(self, event: str, handler: Handler, args: tuple) -> None:
        try:
            await handler(*args)
        except Exception:
            logger.exception(f"Handler for '{event}' failed")

    async def drain(self) -> None:
        """Wait until every dispatched handler task has finished."""
        while self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=DISCORD_API_BASE,
                headers={"Authorization": f"Bot {self.token}"},
                timeout=30.0,
                transport=self._transport,
            )
        return self._http

    async def _request(
        self,
        method: str,
        path: str,
        entity_id: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        response = await self._client().request(method, path, json=json_body)

        if response.status_code == 429:
            retry_after = None
            try:
                retry_after = float(response.json().get("retry_after"))
            except Exception:
                header = response.headers.get("Retry-After")
                retry_after = float(header) if header else None
            self.emit("throttled", {"method": method, "path": path, "retry_after": retry_after})
            raise RateLimitedError("discord", retry_after)

        if response.status_code == 401:
            raise ConfigurationError("Discord rejected the bot token (401 Unauthorized)")

        if response.status_code == 404 and entity_id is not None:
            self._events_cache.pop(entity_id, None)
            raise StaleReferenceError("discord", entity_id)

        if response.status_code >= 500:
            raise TransientError(f"Discord API returned {response.status_code} for {method} {path}")

        response.raise_for_status()
        return response

    async def fetch_current_user(self) -> Dict[str, Any]:
        response = await self._request("GET", "/users/@me")
        return response.json()

    async def list_scheduled_events(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"/guilds/{self.guild_id}/scheduled-events")
        events = response.json()
        for event in events:
            self._events_cache[str(event["id"])] = event
        return events

    async def get_scheduled_event(self, event_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/guilds/{self.guild_id}/scheduled-events/{event_id}", entity_id=event_id
        )
        event = response.json()
        self._events_cache[str(event["id"])] = event
        return event

    async def create_scheduled_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"/guilds/{self.guild_id}/scheduled-events", json_body=payload
        )
        event = response.json()
        self._events_cache[str(event["id"])] = event
        return event

    async def update_scheduled_event(self, event_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "PATCH",
            f"/guilds/{self.guild_id}/scheduled-events/{event_id}",
            entity_id=event_id,
            json_body=payload,
        )
        event = response.json()
        self._events_cache[str(event["id"])] = event
        return event

    async def delete_scheduled_event(self, event_id: str) -> bool:
        await self._request(
            "DELETE", f"/guilds/{self.guild_id}/scheduled-events/{event_id}", entity_id=event_id
        )
        self._events_cache.pop(event_id, None)
        return True

    async def lookup_entity(self, event_id: str) -> Optional[Dict[str, Any]]:
        """Return the scheduled event from the local cache, falling back to REST."""
        cached = self._events_cache.get(event_id)
        if cached is not None:
            return cached
        try:
            return await self.get_scheduled_event(event_id)
        except StaleReferenceError:
            return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def login(self) -> Dict[str, Any]:
        """Verify the token over REST and start the gateway session."""
        if not self.token:
            raise ConfigurationError("DISCORD_TOKEN is not set")

        self.user = await self.fetch_current_user()
        logger.info(f"Bot logged in as {self.user.get('username')} ({self.user_id})")

        if self._gateway_task is None or self._gateway_task.done():
            self._running = True
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._gateway_task = asyncio.get_running_loop().create_task(self._gateway_loop())
        return self.user

    async def close(self) -> None:
        self._running = False
        await self._stop_heartbeat()

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

        if self._gateway_task is not None:
            self._gateway_task.cancel()
            try:
                await self._gateway_task
            except asyncio.CancelledError:
                pass
            self._gateway_task = None

        if self._session is not None:
            await self._session.close()
            self._session = None

        if self._http is not None:
            await self._http.aclose()
            self._http = None

        self._connected = False
        logger.info("Discord client closed")

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    async def _gateway_loop(self) -> None:
        # Gateway reconnect loop with exponential backoff
        while self._running:
            try:
                await self._run_gateway_session()
                self._consecutive_failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._consecutive_failures += 1
                self._connected = False
                logger.warning(f"Discord Gateway session failed ({self._consecutive_failures} in a row): {e}")
                self.emit("error", e)

                if not self._running:
                    break

                # Exponential backoff with jitter, capped at 60s
                backoff = min(1.0 * (2 ** min(self._consecutive_failures, 6)), 60.0)
                sleep_s = backoff + backoff * 0.1 * (2 * random.random() - 1)
                logger.info(f"Reconnecting to Discord Gateway in {sleep_s:.1f}s")
                await asyncio.sleep(sleep_s)

    async def _run_gateway_session(self) -> None:
        assert self._session is not None
        unclean = False

        async with self._session.ws_connect(DISCORD_GATEWAY_URL) as ws:
            self._ws = ws
            logger.info("Connected to Discord Gateway")

            async for msg in ws:
                if not self._running:
                    break
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_gateway_message(json.loads(msg.data))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"Discord Gateway WebSocket error: {ws.exception()}")
                    unclean = True
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    unclean = True
                    break

            close_code = ws.close_code

        self._ws = None
        self._connected = False
        await self._stop_heartbeat()

        if unclean and self._running:
            raise RuntimeError(f"Discord Gateway disconnected unexpectedly (close_code={close_code})")

    async def _handle_gateway_message(self, payload: Dict[str, Any]) -> None:
        opcode = payload.get("op")

        if opcode == GATEWAY_OPCODE_HELLO:
            interval_ms = (payload.get("d") or {}).get("heartbeat_interval", 41250)
            await self._start_heartbeat(interval_ms / 1000.0)
            await self._identify()

        elif opcode == GATEWAY_OPCODE_HEARTBEAT_ACK:
            logger.debug("Discord Gateway heartbeat ack received")

        elif opcode == GATEWAY_OPCODE_HEARTBEAT:
            await self._send_heartbeat()

        elif opcode in (GATEWAY_OPCODE_RECONNECT, GATEWAY_OPCODE_INVALID_SESSION):
            logger.info(f"Discord Gateway asked us to reconnect (op={opcode})")
            self._sequence = None
            if self._ws is not None and not self._ws.closed:
                await self._ws.close()

        elif opcode == GATEWAY_OPCODE_DISPATCH:
            if payload.get("s") is not None:
                self._sequence = payload["s"]
            self.handle_dispatch(payload.get("t"), payload.get("d") or {})

    async def _identify(self) -> None:
        if self._ws is None:
            return
        await self._ws.send_json({
            "op": GATEWAY_OPCODE_IDENTIFY,
            "d": {
                "token": self.token,
                "intents": INTENT_GUILDS | INTENT_GUILD_SCHEDULED_EVENTS,
                "properties": {
                    "os": "linux",
                    "browser": "discord-calendar-sync",
                    "device": "discord-calendar-sync",
                },
            },
        })

    async def _start_heartbeat(self, interval: float) -> None:
        await self._stop_heartbeat()

        async def beat():
            while True:
                await asyncio.sleep(interval)
                await self._send_heartbeat()

        self._heartbeat_task = asyncio.get_running_loop().create_task(beat())

    async def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    async def _send_heartbeat(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.send_json({"op": GATEWAY_OPCODE_HEARTBEAT, "d": self._sequence})

    def handle_dispatch(self, event_type: Optional[str], data: Dict[str, Any]) -> None:
        """Apply a gateway dispatch to the cache and notify handlers."""
        if event_type == "READY":
            self.user = data.get("user") or self.user
            self._connected = True
            logger.info(f"Discord Gateway READY as {self.user_id}")
            self.emit("ready", self.user)
            return

        if event_type == "GUILD_CREATE":
            if str(data.get("id")) != self.guild_id:
                return
            for event in data.get("guild_scheduled_events", []):
                self._events_cache[str(event["id"])] = event
            logger.info(
                f"Found target guild: {data.get('name')} "
                f"({len(data.get('guild_scheduled_events', []))} scheduled events)"
            )
            return

        if not event_type or not event_type.startswith("GUILD_SCHEDULED_EVENT_"):
            return
        if str(data.get("guild_id")) != self.guild_id:
            return

        event_id = str(data.get("id"))
        if event_type == "GUILD_SCHEDULED_EVENT_CREATE":
            self._events_cache[event_id] = data
            logger.debug(f"Discord event created: {data.get('name')} (ID: {event_id})")
            self.emit("scheduled_event_create", data)
        elif event_type == "GUILD_SCHEDULED_EVENT_UPDATE":
            old = self._events_cache.get(event_id)
            self._events_cache[event_id] = data
            logger.debug(f"Discord event updated: {data.get('name')} (ID: {event_id})")
            self.emit("scheduled_event_update", old, data)
        elif event_type == "GUILD_SCHEDULED_EVENT_DELETE":
            self._events_cache.pop(event_id, None)
            logger.debug(f"Discord event deleted: {data.get('name')} (ID: {event_id})")
            self.emit("scheduled_event_delete", data)
