"""
Entry points for a device: authenticate against the server, open the
local key store and bootstrap the identity.
"""

import logging
from typing import Optional

import httpx

from seal.bulk import BulkDecryptor
from seal.keys import KeyManager

from .config import ClientSettings
from .directory_client import DirectoryClient
from .keystore import KeyStore
from .search import MessageSearch
from .session import ChatSession

logger = logging.getLogger(__name__)


async def open_session(
    username: str,
    password: str,
    config: Optional[ClientSettings] = None,
    register: bool = False,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ChatSession:
    """
    Sign in (or register) and return a ready chat session.

    On the first sign-in of an account the identity key pair is created
    here; later sign-ins reuse the private key held by this device.
    Call `await session.close()` when done.

    Args:
        username: Account name
        password: Account password
        config: Client settings
        register: Create the account first
        http_client: HTTP client to use for the directory; left open for
            the caller to close

    Raises:
        DirectoryError: If the server rejects the credentials
        KeyNotFoundError: If the account has a published key this device does not hold
    """
    config = config or ClientSettings()
    directory = DirectoryClient(config.server_url, http_client=http_client)

    try:
        if register:
            await directory.register(username, password)
        else:
            await directory.login(username, password)

        key_store = KeyStore(config.keystore_path, passphrase=config.keystore_passphrase)
        session = ChatSession(
            user_id=username,
            key_manager=KeyManager(key_store, directory),
            messages=directory,
            groups=directory,
            on_close=directory.close
        )
        await session.sign_in()
    except Exception:
        await directory.close()
        raise
    logger.info("Signed in as %s", username)
    return session


def message_search(session: ChatSession, config: Optional[ClientSettings] = None) -> MessageSearch:
    """Search index over a session's direct messages"""
    config = config or ClientSettings()
    decryptor = BulkDecryptor(
        cipher=session.cipher,
        window=config.search_window,
        concurrency=config.decrypt_concurrency
    )
    return MessageSearch(session.user_id, session.key_manager, session.messages, decryptor)
