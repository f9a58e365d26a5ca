"""
Device-side pieces of seal-chat: private key custody, the directory
client, chat sessions and local search.
"""

from .client import message_search, open_session
from .config import ClientSettings
from .directory_client import DirectoryClient, DirectoryError
from .keystore import KeyStore
from .search import MessageSearch, SearchableMessage
from .session import ChatSession, ReceivedMessage

__all__ = [
    'message_search',
    'open_session',
    'ClientSettings',
    'DirectoryClient',
    'DirectoryError',
    'KeyStore',
    'MessageSearch',
    'SearchableMessage',
    'ChatSession',
    'ReceivedMessage'
]
