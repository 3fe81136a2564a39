import os
from typing import Any, Dict, Optional

import httpx


class GreenAPIClient:
    def __init__(self, base_url: str, id_instance: str, api_token: str,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.id_instance = id_instance
        self.api_token = api_token
        self.transport = transport

    @classmethod
    def from_env(cls) -> "GreenAPIClient":
        base_url = os.getenv("GREEN_API_BASE_URL", "https://api.green-api.com")
        id_instance = os.getenv("GREEN_API_INSTANCE_ID", "")
        api_token = os.getenv("GREEN_API_API_TOKEN", "")
        return cls(base_url=base_url, id_instance=id_instance, api_token=api_token)

    @property
    def configured(self) -> bool:
        return bool(self.id_instance and self.api_token)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/waInstance{self.id_instance}/{path}/{self.api_token}"

    def _url_delete_notification_delete(self, receipt_id: int) -> str:
        # Official: DELETE /waInstance{id}/DeleteNotification/{token}/{receiptId}
        return f"{self.base_url}/waInstance{self.id_instance}/DeleteNotification/{self.api_token}/{receipt_id}"

    def _url_delete_notification_post(self) -> str:
        # Official: POST /waInstance{id}/DeleteNotification/{token} with {"receiptId": ...}
        return f"{self.base_url}/waInstance{self.id_instance}/DeleteNotification/{self.api_token}"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def get_state_instance(self) -> str:
        """
        Account state: 'authorized', 'notAuthorized', 'blocked', 'starting',
        'yellowCard' or 'sleepMode'.
        """
        async with self._client(30) as client:
            resp = await client.get(self._url("getStateInstance"))
            resp.raise_for_status()
            return (resp.json() or {}).get("stateInstance", "")

    async def get_qr(self) -> Dict[str, Any]:
        """
        Returns {"type": "qrCode" | "alreadyLogged" | "error", "message": ...};
        for qrCode the message is a base64 PNG.
        """
        async with self._client(30) as client:
            resp = await client.get(self._url("qr"))
            resp.raise_for_status()
            return resp.json() or {}

    async def logout(self) -> bool:
        async with self._client(30) as client:
            resp = await client.get(self._url("logout"))
            resp.raise_for_status()
            return bool((resp.json() or {}).get("isLogout"))

    async def send_message(self, chat_id: str, message: str, quoted_message_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Send a text message to a chat, optionally as a reply to quoted_message_id.
        """
        url = self._url("sendMessage")
        payload: Dict[str, Any] = {"chatId": chat_id, "message": message}
        if quoted_message_id:
            payload["quotedMessageId"] = quoted_message_id
        async with self._client(30) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def send_typing(self, chat_id: str, typing_time_ms: int = 5000) -> None:
        """
        Show "typing..." in the chat. The indicator disappears on its own after
        typing_time_ms or when a message is sent.
        """
        url = self._url("sendTyping")
        payload = {"chatId": chat_id, "typingTime": int(typing_time_ms)}
        async with self._client(30) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()

    async def receive_notification(self) -> Optional[Dict[str, Any]]:
        """
        Long-polls Green API ReceiveNotification. Returns None when the queue is empty.
        """
        url = self._url("ReceiveNotification")
        async with self._client(65) as client:
            resp = await client.get(url)
            if resp.status_code == 200 and resp.content:
                # When no notification, API may return null
                return resp.json()
            if resp.status_code == 204:
                return None
            resp.raise_for_status()
            return None

    async def delete_notification(self, receipt_id: int) -> None:
        """
        Acknowledge and remove a notification so it is not delivered again.
        Order as per docs:
          1) DELETE /.../DeleteNotification/{token}/{receiptId}
          2) POST   /.../DeleteNotification/{token} with JSON {"receiptId": ...}
        """
        async with self._client(30) as client:
            resp = await client.delete(self._url_delete_notification_delete(receipt_id))
            if resp.status_code in (200, 204):
                return
            resp2 = await client.post(self._url_delete_notification_post(), json={"receiptId": receipt_id})
            if resp2.status_code in (200, 204):
                return
            resp2.raise_for_status()
