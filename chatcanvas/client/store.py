"""Client-side conversation state with optimistic updates.

A ``ConversationStore`` is built once per session around a gateway and
handed to whatever renders it. Listeners registered with ``subscribe`` are
called with ``(event_name, store)`` after every change; user-facing notices
arrive as ``notify`` events and are kept in ``store.notifications``.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from chatcanvas.client.cache import CONVERSATIONS_KEY, TTLCache, messages_key
from chatcanvas.client.polling import TASK_COMPLETED, TASK_FAILED, TASK_PROCESSING, TaskPoller
from chatcanvas.utils.error_util import ChatCanvasError, ValidationError
from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()

MAX_UPLOAD_SIZE = 10 * 1024 * 1024


def temp_id():
    return f"temp-{uuid.uuid4()}"


def local_now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def message_order(entry):
    return (entry.state is DeliveryState.PENDING, entry.created_at)


def parse_timestamp(value):
    if not value:
        return local_now()
    return datetime.fromisoformat(value).replace(tzinfo=None)


class DeliveryState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class MessageEntry:
    id: str
    conversation_id: str
    role: str
    content: str
    image_url: Optional[str] = None
    additional_image_urls: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=local_now)
    state: DeliveryState = DeliveryState.CONFIRMED
    error: Optional[str] = None

    @property
    def is_temporary(self):
        return self.id.startswith("temp-")

    @property
    def image_urls(self):
        urls = [self.image_url] if self.image_url else []
        return urls + list(self.additional_image_urls)

    @classmethod
    def from_payload(cls, payload):
        return cls(
            id=payload["id"],
            conversation_id=payload["conversation_id"],
            role=payload["role"],
            content=payload.get("content") or "",
            image_url=payload.get("image_url"),
            additional_image_urls=list(payload.get("additional_image_urls") or []),
            created_at=parse_timestamp(payload.get("created_at")),
        )

    def confirm(self, saved):
        self.id = saved.id
        self.content = saved.content
        self.image_url = saved.image_url
        self.additional_image_urls = saved.additional_image_urls
        self.created_at = saved.created_at
        self.state = DeliveryState.CONFIRMED
        self.error = None


@dataclass
class FavoriteEntry:
    id: str
    image_url: str
    conversation_id: str
    message_id: str
    created_at: datetime = field(default_factory=local_now)

    @property
    def is_temporary(self):
        return self.id.startswith("temp-")

    @classmethod
    def from_payload(cls, payload):
        return cls(
            id=payload["id"],
            image_url=payload["image_url"],
            conversation_id=payload["conversation_id"],
            message_id=payload["message_id"],
            created_at=parse_timestamp(payload.get("created_at")),
        )


@dataclass
class UploadFile:
    filename: str
    data: bytes
    content_type: str


@dataclass
class UploadBatch:
    urls: List[str]
    failures: List[tuple]


class ConversationStore:
    def __init__(self, gateway, cache_ttl=30.0, poll_interval=5.0, max_poll_attempts=60, max_upload_size=MAX_UPLOAD_SIZE):
        self.gateway = gateway
        self.cache = TTLCache(cache_ttl)
        self.poller = TaskPoller(gateway, poll_interval, max_poll_attempts, on_update=self._on_task_update)
        self.max_upload_size = max_upload_size

        self.conversations = []
        self.current_conversation = None
        self.messages = []
        self.favorites = []
        self.notifications = []
        self.is_sending = False
        self.is_generating = False

        self._listeners = []
        self._background = set()
        self._thumbnail_requested = set()
        # pending and failed entries per conversation, kept across switches
        self._unsent = {}

    @property
    def tasks(self):
        return self.poller.handles

    @property
    def current_conversation_id(self):
        return self.current_conversation["id"] if self.current_conversation else None

    def subscribe(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event):
        for listener in list(self._listeners):
            listener(event, self)

    def notify(self, level, text):
        self.notifications.append((level, text))
        self._emit("notify")

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_for_background(self):
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self):
        await self.poller.close()
        for task in list(self._background):
            task.cancel()
        await self.wait_for_background()
        self._update_generating()

    def _require_conversation(self):
        if self.current_conversation is None:
            raise ValidationError("No conversation selected")
        return self.current_conversation

    def _find_conversation(self, conversation_id):
        return next((c for c in self.conversations if c["id"] == conversation_id), None)

    def _cache_conversations(self):
        self.cache.set(CONVERSATIONS_KEY, list(self.conversations))

    # Conversations

    async def load_conversations(self, force=False):
        cached = None if force else self.cache.get(CONVERSATIONS_KEY)
        if cached is not None:
            self.conversations = list(cached)
        else:
            self.conversations = await self.gateway.list_conversations()
            self._cache_conversations()
        self._emit("conversations")
        return self.conversations

    async def create_conversation(self, title=None):
        conversation = await self.gateway.create_conversation(title)
        self.conversations.insert(0, conversation)
        self._cache_conversations()
        self._emit("conversations")
        await self.select_conversation(conversation["id"])
        return conversation

    async def select_conversation(self, conversation_id, force=False):
        previous = self.current_conversation_id
        if previous and previous != conversation_id:
            self.poller.stop_conversation(previous)
            self._update_generating()

        self.current_conversation = self._find_conversation(conversation_id) or {"id": conversation_id}
        self.messages = await self._load_messages(conversation_id, force=force)
        self.favorites = [
            FavoriteEntry.from_payload(payload) for payload in await self.gateway.list_favorites(conversation_id)
        ]
        self._emit("conversation_selected")
        return self.current_conversation

    async def delete_conversation(self, conversation_id):
        try:
            await self.gateway.delete_conversation(conversation_id)
        except ChatCanvasError as e:
            self.notify("error", f"Failed to delete conversation: {e.message}")
            raise

        self.poller.stop_conversation(conversation_id)
        self.conversations = [c for c in self.conversations if c["id"] != conversation_id]
        self._cache_conversations()
        self.cache.invalidate(messages_key(conversation_id))
        self._unsent.pop(conversation_id, None)
        if self.current_conversation_id == conversation_id:
            self.current_conversation = None
            self.messages = []
            self.favorites = []
        self._update_generating()
        self._emit("conversations")

    async def rename_conversation(self, conversation_id, title):
        conversation = await self.gateway.rename_conversation(conversation_id, title)
        self._replace_conversation(conversation)
        return conversation

    def _replace_conversation(self, conversation):
        self.conversations = [conversation if c["id"] == conversation["id"] else c for c in self.conversations]
        if self.current_conversation_id == conversation["id"]:
            self.current_conversation = conversation
        self._cache_conversations()
        self._emit("conversations")

    # Messages

    async def _load_messages(self, conversation_id, force=False):
        key = messages_key(conversation_id)
        cached = None if force else self.cache.get(key)
        if cached is None:
            cached = [
                MessageEntry.from_payload(payload) for payload in await self.gateway.list_messages(conversation_id)
            ]
            self.cache.set(key, list(cached))
        entries = list(cached) + list(self._unsent.get(conversation_id, []))
        entries.sort(key=message_order)
        return entries

    async def refresh_messages(self):
        conversation = self._require_conversation()
        self.messages = await self._load_messages(conversation["id"], force=True)
        self._emit("messages")

    def _sort_messages(self):
        self.messages.sort(key=message_order)

    def _sync_message_cache(self, conversation_id):
        if conversation_id == self.current_conversation_id:
            confirmed = [entry for entry in self.messages if entry.state is DeliveryState.CONFIRMED]
            self.cache.set(messages_key(conversation_id), confirmed)
        else:
            self.cache.invalidate(messages_key(conversation_id))

    def _keep_unsent(self, entry):
        unsent = self._unsent.setdefault(entry.conversation_id, [])
        if not any(existing is entry for existing in unsent):
            unsent.append(entry)

    def _drop_unsent(self, entry):
        unsent = [existing for existing in self._unsent.get(entry.conversation_id, []) if existing is not entry]
        if unsent:
            self._unsent[entry.conversation_id] = unsent
        else:
            self._unsent.pop(entry.conversation_id, None)

    def _touch_conversation(self, conversation_id):
        """Move the conversation to the top; the server bumped its ``updated_at``."""
        conversation = self._find_conversation(conversation_id)
        if conversation is not None:
            self.conversations = [conversation] + [c for c in self.conversations if c is not conversation]
            self._emit("conversations")
        self.cache.invalidate(CONVERSATIONS_KEY)

    def _add_confirmed(self, entry):
        if entry.conversation_id != self.current_conversation_id:
            self.cache.invalidate(messages_key(entry.conversation_id))
            return
        if not any(existing.id == entry.id for existing in self.messages):
            self.messages.append(entry)
            self._sort_messages()
        self._sync_message_cache(entry.conversation_id)

    def find_message(self, message_id):
        return next((entry for entry in self.messages if entry.id == message_id), None)

    async def send_message(self, content, image_url=None, additional_image_urls=None, role="user"):
        conversation = self._require_conversation()
        entry = MessageEntry(
            id=temp_id(),
            conversation_id=conversation["id"],
            role=role,
            content=(content or "").strip(),
            image_url=image_url,
            additional_image_urls=list(additional_image_urls or []),
            state=DeliveryState.PENDING,
        )
        self.messages.append(entry)
        self._keep_unsent(entry)
        self._emit("messages")
        await self._deliver(entry)
        return entry

    async def retry_message(self, message_id):
        entry = self.find_message(message_id)
        if entry is None or entry.state is not DeliveryState.FAILED:
            raise ValidationError("Only failed messages can be retried")
        return await self._deliver(entry)

    async def _deliver(self, entry):
        entry.state = DeliveryState.PENDING
        entry.error = None
        self.is_sending = True
        self._emit("messages")
        try:
            payload = await self.gateway.create_message(
                entry.conversation_id,
                entry.content,
                role=entry.role,
                image_url=entry.image_url,
                additional_image_urls=entry.additional_image_urls,
            )
        except ChatCanvasError as e:
            entry.state = DeliveryState.FAILED
            entry.error = e.message
            logger.info(f"Message {entry.id} failed to send: {e.message}")
            self.notify("error", f"Failed to send message: {e.message}")
            return False
        finally:
            self.is_sending = False

        entry.confirm(MessageEntry.from_payload(payload))
        self._drop_unsent(entry)
        # a refresh may already have brought in the persisted row
        self.messages = [m for m in self.messages if m is entry or m.id != entry.id]
        self._sort_messages()
        self._sync_message_cache(entry.conversation_id)
        self._touch_conversation(entry.conversation_id)
        self._maybe_set_thumbnail(entry.conversation_id, entry.image_urls)
        self._emit("messages")
        return True

    async def send_and_dispatch(self, text, image_urls=None):
        """Send the user's message, then ask the agent for a reply.

        Returns the assistant ``MessageEntry``, or ``None`` when the user
        message could not be saved or the agent call failed. The agent needs
        an instruction, so images without text are refused up front.
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("Describe what you want done with the image before sending.")
        image_urls = list(image_urls or [])
        primary_image = image_urls[0] if image_urls else None
        entry = await self.send_message(text, image_url=primary_image, additional_image_urls=image_urls[1:])
        if entry.state is DeliveryState.FAILED:
            return None

        self.is_generating = True
        self._emit("generating")
        try:
            result = await self.gateway.run_agent(entry.conversation_id, text, image_url=primary_image)
        except ChatCanvasError as e:
            self._update_generating()
            self.notify("error", f"Failed to get a reply: {e.message}")
            return None

        assistant = MessageEntry.from_payload(result["message"])
        self._add_confirmed(assistant)
        self._touch_conversation(assistant.conversation_id)
        self._maybe_set_thumbnail(assistant.conversation_id, assistant.image_urls)

        task = result.get("task")
        if task:
            status = task.get("status")
            if status == TASK_PROCESSING:
                self.track_task(task["task_id"], assistant.conversation_id)
            elif status == TASK_FAILED:
                self.notify("error", f"Image processing failed: {task.get('error')}")
            elif status == TASK_COMPLETED:
                self.notify("success", "Image ready")

        self._update_generating()
        self._emit("messages")
        return assistant

    # Image tasks

    def track_task(self, task_id, conversation_id=None):
        handle = self.poller.track(task_id, conversation_id or self.current_conversation_id)
        self._update_generating()
        self._emit("generating")
        return handle

    def _update_generating(self):
        self.is_generating = bool(self.poller.active)

    async def _on_task_update(self, handle):
        self._update_generating()
        if handle.status == TASK_COMPLETED:
            self.notify("success", "Image ready")
            if handle.output_image_url:
                self._maybe_set_thumbnail(handle.conversation_id, [handle.output_image_url])
            self.cache.invalidate(messages_key(handle.conversation_id))
            if handle.conversation_id == self.current_conversation_id:
                try:
                    await self.refresh_messages()
                except ChatCanvasError as e:
                    logger.info(f"Could not refresh messages after task {handle.task_id}: {e.message}")
                    self.notify("warning", f"Image is ready but messages could not be refreshed: {e.message}")
        elif handle.status == TASK_FAILED:
            self.notify("error", f"Image processing failed: {handle.error}")
        else:
            self.notify("warning", handle.error or "Image processing timed out")
        self._emit("generating")

    # Thumbnails

    def _maybe_set_thumbnail(self, conversation_id, image_urls):
        if not image_urls or conversation_id in self._thumbnail_requested:
            return None
        conversation = self._find_conversation(conversation_id) or self.current_conversation
        if conversation and conversation.get("id") == conversation_id and conversation.get("thumbnail_url"):
            return None
        self._thumbnail_requested.add(conversation_id)
        return self._spawn(self._set_thumbnail(conversation_id, image_urls[0]))

    async def _set_thumbnail(self, conversation_id, thumbnail_url):
        try:
            conversation = await self.gateway.set_thumbnail(conversation_id, thumbnail_url)
        except ChatCanvasError as e:
            logger.info(f"Could not set thumbnail for conversation {conversation_id}: {e.message}")
            self._thumbnail_requested.discard(conversation_id)
            return
        if self._find_conversation(conversation_id) or self.current_conversation_id == conversation_id:
            self._replace_conversation(conversation)

    # Uploads

    def _check_upload(self, upload):
        if not (upload.content_type or "").lower().startswith("image/"):
            return "Only image files can be uploaded."
        if len(upload.data) > self.max_upload_size:
            return f"Image files cannot exceed {self.max_upload_size // (1024 * 1024)}MB."
        return None

    async def upload_images(self, files):
        failures = []
        accepted = []
        for upload in files:
            problem = self._check_upload(upload)
            if problem:
                failures.append((upload.filename, problem))
            else:
                accepted.append(upload)

        results = await asyncio.gather(
            *(self.gateway.upload_image(u.filename, u.data, u.content_type) for u in accepted),
            return_exceptions=True,
        )
        urls = []
        for upload, result in zip(accepted, results):
            if isinstance(result, ChatCanvasError):
                failures.append((upload.filename, result.message))
            elif isinstance(result, BaseException):
                raise result
            else:
                urls.append(result)

        if failures and urls:
            self.notify("warning", f"{len(failures)} of {len(files)} images failed to upload")
        elif failures:
            self.notify("error", "Image upload failed")
        return UploadBatch(urls=urls, failures=failures)

    # Favorites

    def is_favorite(self, image_url):
        return any(favorite.image_url == image_url for favorite in self.favorites)

    async def favorite_image(self, message_id, image_url):
        existing = next((f for f in self.favorites if f.image_url == image_url), None)
        if existing:
            return existing

        conversation = self._require_conversation()
        entry = FavoriteEntry(
            id=temp_id(), image_url=image_url, conversation_id=conversation["id"], message_id=message_id
        )
        self.favorites.insert(0, entry)
        self._emit("favorites")
        try:
            payload, _ = await self.gateway.add_favorite(conversation["id"], message_id, image_url)
        except ChatCanvasError as e:
            self.favorites = [f for f in self.favorites if f is not entry]
            self.notify("error", f"Failed to favorite image: {e.message}")
            return None

        entry.id = payload["id"]
        entry.created_at = parse_timestamp(payload.get("created_at"))
        self._emit("favorites")
        return entry

    async def unfavorite_image(self, image_url):
        index = next((i for i, f in enumerate(self.favorites) if f.image_url == image_url), None)
        if index is None:
            return True

        entry = self.favorites.pop(index)
        self._emit("favorites")
        try:
            await self.gateway.remove_favorite(image_url)
        except ChatCanvasError as e:
            self.favorites.insert(index, entry)
            self.notify("error", f"Failed to remove favorite: {e.message}")
            return False
        return True
