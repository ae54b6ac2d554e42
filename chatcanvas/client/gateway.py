"""Async HTTP gateway used by the conversation store.

Every backend call goes through ``ChatCanvasGateway.request`` so that error
bodies come back as ``ChatCanvasError`` kinds and transport failures as
``TransientNetworkError``.
"""
import httpx

from chatcanvas.utils.error_util import TransientNetworkError, error_from_payload
from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()


class ChatCanvasGateway:
    def __init__(self, base_url, api_token, timeout=30.0, client=None):
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=timeout,
        )

    async def request(self, method, path, **kwargs):
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise TransientNetworkError(f"Network error: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.is_error:
            raise error_from_payload(response.status_code, payload)
        return payload

    async def aclose(self):
        await self.client.aclose()

    async def list_conversations(self):
        payload = await self.request("GET", "/chat/conversations")
        return payload.get("conversations", [])

    async def create_conversation(self, title=None):
        body = {"title": title} if title else {}
        payload = await self.request("POST", "/chat/conversations", json=body)
        return payload["conversation"]

    async def delete_conversation(self, conversation_id):
        await self.request("DELETE", f"/chat/conversations/{conversation_id}")

    async def rename_conversation(self, conversation_id, title):
        payload = await self.request("PATCH", f"/chat/conversations/{conversation_id}", json={"title": title})
        return payload["conversation"]

    async def set_thumbnail(self, conversation_id, thumbnail_url):
        payload = await self.request(
            "POST", f"/chat/conversations/{conversation_id}/thumbnail", json={"thumbnail_url": thumbnail_url}
        )
        return payload["conversation"]

    async def list_messages(self, conversation_id):
        payload = await self.request("GET", f"/chat/conversations/{conversation_id}/messages")
        return payload.get("messages", [])

    async def create_message(self, conversation_id, content, role="user", image_url=None, additional_image_urls=None):
        body = {"role": role, "content": content, "additional_image_urls": list(additional_image_urls or [])}
        if image_url:
            body["image_url"] = image_url
        payload = await self.request("POST", f"/chat/conversations/{conversation_id}/messages", json=body)
        return payload["message"]

    async def run_agent(self, conversation_id, message, image_url=None):
        body = {"conversation_id": conversation_id, "message": message}
        if image_url:
            body["image_url"] = image_url
        return await self.request("POST", "/chat/agent", json=body)

    async def upload_image(self, filename, data, content_type):
        payload = await self.request("POST", "/chat/upload-image", files={"file": (filename, data, content_type)})
        return payload["image_url"]

    async def get_task(self, task_id):
        return await self.request("GET", f"/image/tasks/{task_id}")

    async def list_favorites(self, conversation_id=None):
        params = {"conversation_id": conversation_id} if conversation_id else None
        payload = await self.request("GET", "/gallery/favorites", params=params)
        return payload.get("favorites", [])

    async def add_favorite(self, conversation_id, message_id, image_url):
        payload = await self.request(
            "POST",
            "/gallery/favorites",
            json={"conversation_id": conversation_id, "message_id": message_id, "image_url": image_url},
        )
        return payload["favorite"], payload.get("created", True)

    async def remove_favorite(self, image_url):
        payload = await self.request("DELETE", "/gallery/favorites", json={"image_url": image_url})
        return payload.get("removed", False)

    async def get_balance(self):
        return await self.request("GET", "/credits/balance")
