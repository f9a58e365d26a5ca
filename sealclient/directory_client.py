"""
HTTP client for the key directory server.

Implements the identity directory, message store and group directory
seams of the encryption core over the server's REST API. Only public
keys and ciphertext ever leave the device through this client.
"""

import logging
from typing import Dict, List, Optional

import httpx

from seal.primitives import b64decode, b64encode

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """The server rejected a request"""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class DirectoryClient:
    """
    Async client for one signed-in user.

    Args:
        server_url: Base URL of the server
        http_client: Client to use instead of a new httpx.AsyncClient. The
            caller keeps ownership and closes it.
    """

    def __init__(self, server_url: str = "http://localhost:8000", http_client: Optional[httpx.AsyncClient] = None):
        self.server_url = server_url.rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()
        self.username: Optional[str] = None
        self.token: Optional[str] = None

    async def close(self):
        """Close the HTTP client if this instance created it"""
        if self._owns_client:
            await self.http_client.aclose()

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = await self.http_client.request(
            method, f"{self.server_url}{path}", headers=self._headers(), **kwargs
        )
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise DirectoryError(response.status_code, str(detail))
        return response

    async def _authenticate(self, path: str, username: str, password: str):
        response = await self._request("POST", path, json={"username": username, "password": password})
        data = response.json()
        self.token = data["access_token"]
        self.username = data["username"]

    async def register(self, username: str, password: str):
        """Create an account and keep its token"""
        await self._authenticate("/api/register", username, password)
        logger.info("Registered %s", username)

    async def login(self, username: str, password: str):
        """Sign in and keep the token"""
        await self._authenticate("/api/login", username, password)

    async def list_users(self) -> List[str]:
        response = await self._request("GET", "/api/users")
        return response.json()["users"]

    # Identity directory

    async def get_public_key(self, user_id: str) -> Optional[bytes]:
        try:
            response = await self._request("GET", f"/api/keys/{user_id}")
        except DirectoryError as e:
            if e.status_code == 404:
                return None
            raise
        return b64decode(response.json()["public_key"])

    async def publish_public_key(self, user_id: str, public_key: bytes):
        await self._request("PUT", f"/api/keys/{user_id}", json={"public_key": b64encode(public_key)})

    # Message store

    async def save_direct_message(self, row: Dict) -> Dict:
        body = {
            "recipient_id": row["recipient_id"],
            "ciphertext": row["ciphertext"],
            "iv": row["iv"],
            "wrapped_key": row["wrapped_key"]
        }
        response = await self._request("POST", "/api/messages", json=body)
        return response.json()

    async def list_direct_messages(
        self, user_id: str, peer_id: Optional[str] = None, limit: int = 500
    ) -> List[Dict]:
        """Rows involving user_id, most recent first. The server scopes this to the token's user."""
        if user_id != self.username:
            raise DirectoryError(403, "Can only list the signed-in user's messages")
        params = {"limit": limit}
        if peer_id is not None:
            params["peer"] = peer_id
        response = await self._request("GET", "/api/messages", params=params)
        return response.json()["messages"]

    async def mark_read(self, message_id: int):
        await self._request("POST", f"/api/messages/{message_id}/read")

    async def save_group_message(self, row: Dict) -> Dict:
        body = {"ciphertext": row["ciphertext"], "iv": row["iv"]}
        response = await self._request("POST", f"/api/groups/{row['group_id']}/messages", json=body)
        return response.json()

    async def list_group_messages(self, group_id: str, limit: int = 500) -> List[Dict]:
        response = await self._request("GET", f"/api/groups/{group_id}/messages", params={"limit": limit})
        return response.json()["messages"]

    # Group directory

    async def create_group(self, group_id: str, name: str, created_by: str, records: List[Dict]):
        if created_by != self.username:
            raise DirectoryError(403, "Groups are created by the signed-in user")
        body = {
            "group_id": group_id,
            "name": name,
            "members": [
                {"member_id": r["member_id"], "encrypted_group_key": r["encrypted_group_key"]}
                for r in records
            ]
        }
        await self._request("POST", "/api/groups", json=body)

    async def add_group_member(self, record: Dict):
        body = {"member_id": record["member_id"], "encrypted_group_key": record["encrypted_group_key"]}
        await self._request("POST", f"/api/groups/{record['group_id']}/members", json=body)

    async def get_group_key_record(self, group_id: str, member_id: str) -> Optional[Dict]:
        try:
            response = await self._request("GET", f"/api/groups/{group_id}/members/{member_id}/key")
        except DirectoryError as e:
            if e.status_code == 404:
                return None
            raise
        return response.json()

    async def list_group_members(self, group_id: str) -> List[str]:
        response = await self._request("GET", f"/api/groups/{group_id}/members")
        return response.json()["members"]
