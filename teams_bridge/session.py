import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional
from dataclasses import dataclass

import httpx

from .config import Config
from .database.repository import Credentials, Repository, ThreadRecord
from .sync.discovery import ThreadDiscovery
from .sync.events import EventSink, HomeLookup, RoomType, SessionState, SessionStateEvent
from .sync.ingest import MessageIngestor
from .sync.reactions import EMOTION_EMOJI, ReactionReconciler, emotion_for_emoji
from .sync.receipts import ReceiptReconciler
from .sync.scheduler import PollScheduler
from .sync.tokens import TokenManager
from .sync.trackers import PendingEchoes, ReactionSeen, ReceiptPollGate, UnreadCycle
from .teams.auth import AuthClient
from .teams.client import TeamsClient
from .teams.errors import AuthRequiredError, TeamsAPIError, UnsupportedReactionError
from .teams.models import DEFAULT_ROOM_NAME, generate_correlation_id, normalize_message_id, to_ms, utcnow


logger = logging.getLogger(__name__)


@dataclass
class ChatInfo:
    thread_id: str
    name: str
    room_type: RoomType


class Session:
    """One logged-in account: its credentials, its poll loop and its outbound actions."""

    def __init__(
        self,
        account_id: str,
        credentials: Credentials,
        repo: Repository,
        sink: EventSink,
        home: HomeLookup,
        auth: AuthClient,
        http: httpx.AsyncClient,
        config: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
        client_factory: Optional[Callable[["Session"], TeamsClient]] = None,
    ):
        self.account_id = account_id
        self.repo = repo
        self.sink = sink
        self.home = home
        self.http = http
        self.clock = clock
        self.stop_grace = config.stop_grace if config else 5.0
        self._client_factory = client_factory
        self._client: Optional[TeamsClient] = None
        self._client_lock = threading.Lock()
        self._state = SessionState.CONNECTING
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self.tokens = TokenManager(account_id, credentials, auth, repo, clock=clock)
        self.echoes = PendingEchoes()
        self.reaction_seen = ReactionSeen()
        self.unread = UnreadCycle()

        receipt_interval = timedelta(seconds=config.receipt_poll_interval) if config else None
        gate = ReceiptPollGate(receipt_interval) if receipt_interval else ReceiptPollGate()

        self.discovery = ThreadDiscovery(account_id, self.tokens, repo, sink)
        self.reactions = ReactionReconciler(account_id, sink, home, self.reaction_seen)
        self.ingestor = MessageIngestor(account_id, repo, sink, self.reactions, self.echoes, self.unread)
        self.receipts = ReceiptReconciler(account_id, repo, sink, home, gate, self.unread)

        scheduler_options = {}
        if config:
            scheduler_options = {
                "discovery_interval": timedelta(seconds=config.discovery_interval),
                "wake_ceiling": timedelta(seconds=config.poll_wake_ceiling),
            }
        self.scheduler = PollScheduler(
            account_id,
            repo,
            discover=self._discover,
            poll=self.poll_thread,
            halted=self.halted,
            clock=clock,
            **scheduler_options,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def credentials(self) -> Credentials:
        return self.tokens.credentials

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def client(self) -> TeamsClient:
        with self._client_lock:
            if self._client is None:
                if self._client_factory:
                    self._client = self._client_factory(self)
                else:
                    self._client = TeamsClient(self.http, lambda: self.tokens.session_token)
            return self._client

    def halted(self) -> bool:
        return self._state in (SessionState.BAD_CREDENTIALS, SessionState.LOGGED_OUT)

    def is_logged_in(self) -> bool:
        return self._state == SessionState.CONNECTED and self.tokens.has_valid_session_token()

    def is_this_user(self, user_id: str) -> bool:
        return bool(user_id) and user_id == self.tokens.self_id

    def _set_state(self, state: SessionState, message: str = "") -> None:
        if state == self._state:
            return
        logger.info("Session %s: %s -> %s %s", self.account_id, self._state.value, state.value, message)
        self._state = state
        self.sink.emit(SessionStateEvent(account_id=self.account_id, state=state, message=message))

    def _mark_bad_credentials(self, error: AuthRequiredError) -> None:
        self._set_state(SessionState.BAD_CREDENTIALS, str(error))

    async def connect(self) -> bool:
        self._set_state(SessionState.CONNECTING)
        try:
            await self.tokens.ensure_session_token()
        except AuthRequiredError as e:
            self._mark_bad_credentials(e)
            return False
        except TeamsAPIError as e:
            # Transient; the loop retries the exchange through thread backoff.
            logger.warning("Token refresh failed for %s, starting anyway: %s", self.account_id, e)
        self._set_state(SessionState.CONNECTED)
        self.start()
        return True

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.scheduler.run(self._stop_event))
        logger.info("Session %s started", self.account_id)

    async def stop(self, grace: Optional[float] = None) -> None:
        grace = self.stop_grace if grace is None else grace
        self._stop_event.set()
        task = self._task
        if task and not task.done():
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=grace)
            if not done:
                logger.warning("Session %s did not stop within %.1fs", self.account_id, grace)
        self._task = None
        logger.info("Session %s stopped", self.account_id)

    async def _discover(self) -> None:
        try:
            await self.discovery.run(self.client)
        except AuthRequiredError as e:
            self._mark_bad_credentials(e)
        except TeamsAPIError as e:
            if e.status == 401:
                self.tokens.invalidate_session_token()
            raise

    async def poll_thread(self, thread: ThreadRecord, now: datetime) -> int:
        try:
            await self.tokens.ensure_session_token()
        except AuthRequiredError as e:
            self._mark_bad_credentials(e)
            raise

        client = self.client
        self_id = self.tokens.self_id
        try:
            ingested = await self.ingestor.poll_thread(client, thread, self_id, now)
        except TeamsAPIError as e:
            if e.status == 401:
                self.tokens.invalidate_session_token()
            raise

        try:
            await self.receipts.poll_thread(client, thread.thread_id, self_id, now)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Receipt poll failed for %s: %s", thread.thread_id, e)

        return ingested

    async def sync_once(self) -> int:
        await self._discover()
        if self.halted():
            return 0
        return await self.scheduler.poll_all_once()

    async def relogin(self, refresh_token: str) -> bool:
        refresh_token = refresh_token.strip()
        if not refresh_token:
            raise ValueError("refresh token is empty")
        creds = self.credentials
        creds.refresh_token = refresh_token
        creds.access_token = ""
        creds.access_token_expires_at = None
        creds.scoped_tokens.clear()
        self.tokens.invalidate_session_token()
        await self.repo.save_credentials(self.account_id, creds)
        self.scheduler.next_discovery = None
        return await self.connect()

    async def logout(self) -> None:
        await self.stop()
        self.tokens.credentials = Credentials()
        await self.repo.delete_account(self.account_id)
        self._set_state(SessionState.LOGGED_OUT)

    async def send_message(self, thread_id: str, body: str) -> str:
        await self.tokens.ensure_session_token()
        correlation_id = generate_correlation_id()
        self.echoes.record(correlation_id, self.clock())
        await self.client.send_message_with_id(thread_id, body, self.tokens.self_id, correlation_id)
        return correlation_id

    async def send_gif(self, thread_id: str, gif_url: str, title: str = "") -> str:
        await self.tokens.ensure_session_token()
        correlation_id = generate_correlation_id()
        self.echoes.record(correlation_id, self.clock())
        await self.client.send_gif_with_id(thread_id, gif_url, title, self.tokens.self_id, correlation_id)
        return correlation_id

    async def add_reaction(self, thread_id: str, message_id: str, emoji: str) -> str:
        emotion_key = emotion_for_emoji(emoji)
        if emotion_key is None:
            raise UnsupportedReactionError(f"no Teams reaction for {emoji!r}")
        await self.tokens.ensure_session_token()
        await self.client.add_reaction(thread_id, normalize_message_id(message_id), emotion_key, to_ms(self.clock()))
        return emotion_key

    async def remove_reaction(self, thread_id: str, message_id: str, reaction: str) -> bool:
        reaction = (reaction or "").strip()
        emotion_key = reaction if reaction in EMOTION_EMOJI else emotion_for_emoji(reaction)
        if emotion_key is None:
            return False
        await self.tokens.ensure_session_token()
        await self.client.remove_reaction(thread_id, normalize_message_id(message_id), emotion_key)
        return True

    async def send_typing(self, thread_id: str) -> None:
        await self.tokens.ensure_session_token()
        await self.client.send_typing(thread_id, self.tokens.self_id, generate_correlation_id())

    async def handle_read_receipt(self, thread_id: str) -> bool:
        await self.tokens.ensure_session_token()
        return await self.receipts.send_receipt(self.client, thread_id, self.clock())

    async def get_chat_info(self, thread_id: str) -> ChatInfo:
        thread = await self.repo.get_thread(self.account_id, thread_id)
        if thread is None:
            return ChatInfo(thread_id=thread_id, name=DEFAULT_ROOM_NAME, room_type=RoomType.GROUP)
        return ChatInfo(
            thread_id=thread_id,
            name=thread.name or DEFAULT_ROOM_NAME,
            room_type=RoomType.DM if thread.is_one_to_one else RoomType.GROUP,
        )

    async def get_user_info(self, user_id: str) -> str:
        profile = await self.repo.get_profile(user_id)
        if profile and profile.display_name:
            return profile.display_name
        return user_id
