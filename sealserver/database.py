"""
Database models and operations for the key directory server.

Uses SQLAlchemy with SQLite for user accounts, published public keys,
wrapped group keys and ciphertext rows.
Note: the server only ever holds public keys and ciphertext. Byte fields
arrive base64-encoded and are stored as opaque text.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from passlib.context import CryptContext
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    or_,
    and_,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class User(Base):
    """User account model; public_key is the published identity key"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=True)  # RSA SPKI DER (base64)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    is_active = Column(Boolean, default=True)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class DirectMessage(Base):
    """One encrypted direct message; immutable apart from read status"""
    __tablename__ = "direct_messages"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(String(50), index=True, nullable=False)
    recipient_id = Column(String(50), index=True, nullable=False)
    ciphertext = Column(Text, nullable=False)
    iv = Column(String(32), nullable=False)
    wrapped_key = Column(Text, nullable=False)
    status = Column(String(16), default="sent", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'sender_id': self.sender_id,
            'recipient_id': self.recipient_id,
            'ciphertext': self.ciphertext,
            'iv': self.iv,
            'wrapped_key': self.wrapped_key,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'read_at': _iso(self.read_at)
        }


class ChatGroup(Base):
    """Group chat"""
    __tablename__ = "chat_groups"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    created_by = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class GroupMember(Base):
    """A member's copy of the group key, wrapped with their public key"""
    __tablename__ = "group_members"
    __table_args__ = (UniqueConstraint("group_id", "member_id"),)

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(String(64), ForeignKey("chat_groups.id", ondelete="CASCADE"), index=True, nullable=False)
    member_id = Column(String(50), index=True, nullable=False)
    encrypted_group_key = Column(Text, nullable=False)
    role = Column(String(16), default="member", nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> Dict:
        return {
            'group_id': self.group_id,
            'member_id': self.member_id,
            'encrypted_group_key': self.encrypted_group_key,
            'role': self.role
        }


class GroupMessage(Base):
    """One encrypted group message; no per-message key"""
    __tablename__ = "group_messages"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(String(64), ForeignKey("chat_groups.id", ondelete="CASCADE"), index=True, nullable=False)
    sender_id = Column(String(50), nullable=False)
    ciphertext = Column(Text, nullable=False)
    iv = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'group_id': self.group_id,
            'sender_id': self.sender_id,
            'ciphertext': self.ciphertext,
            'iv': self.iv,
            'created_at': _iso(self.created_at)
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./seal.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Args:
            username: Unique username
            password: Plain text password (will be hashed)

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(username=username, hashed_password=User.hash_password(password))
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        """Get user by username"""
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.verify_password(password):
            return None
        return user

    async def list_users(self) -> List[str]:
        """List all active usernames"""
        async with self.async_session() as session:
            result = await session.execute(
                select(User.username).where(User.is_active.is_(True)).order_by(User.username)
            )
            return [row[0] for row in result.all()]

    async def set_public_key(self, username: str, public_key: str) -> bool:
        """
        Publish (or replace, on identity reset) a user's public key.

        Returns:
            False if the user does not exist
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if not user:
                return False
            user.public_key = public_key
            await session.commit()
            return True

    async def get_public_key(self, username: str) -> Optional[str]:
        """Get a user's published public key (base64), if any"""
        async with self.async_session() as session:
            result = await session.execute(select(User.public_key).where(User.username == username))
            return result.scalar_one_or_none()

    async def save_direct_message(
        self, sender_id: str, recipient_id: str, ciphertext: str, iv: str, wrapped_key: str
    ) -> Dict:
        """Store one encrypted direct message"""
        async with self.async_session() as session:
            message = DirectMessage(
                sender_id=sender_id,
                recipient_id=recipient_id,
                ciphertext=ciphertext,
                iv=iv,
                wrapped_key=wrapped_key
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message.to_dict()

    async def list_direct_messages(
        self, username: str, peer: Optional[str] = None, limit: int = 500
    ) -> List[Dict]:
        """
        Messages sent or received by a user, most recent first.

        Args:
            username: Party to the conversation
            peer: Restrict to one conversation partner
            limit: Maximum rows
        """
        if peer is None:
            condition = or_(DirectMessage.sender_id == username, DirectMessage.recipient_id == username)
        else:
            condition = or_(
                and_(DirectMessage.sender_id == username, DirectMessage.recipient_id == peer),
                and_(DirectMessage.sender_id == peer, DirectMessage.recipient_id == username),
            )

        async with self.async_session() as session:
            result = await session.execute(
                select(DirectMessage)
                .where(condition)
                .order_by(DirectMessage.created_at.desc(), DirectMessage.id.desc())
                .limit(limit)
            )
            return [message.to_dict() for message in result.scalars().all()]

    async def mark_read(self, message_id: int, recipient_id: str) -> bool:
        """
        Mark a received message as read.

        Returns:
            False if no such message was addressed to recipient_id
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(DirectMessage).where(
                    DirectMessage.id == message_id, DirectMessage.recipient_id == recipient_id
                )
            )
            message = result.scalar_one_or_none()
            if not message:
                return False
            if message.read_at is None:
                message.status = "read"
                message.read_at = utcnow()
                await session.commit()
            return True

    async def create_group(
        self, group_id: str, name: str, created_by: str, members: List[Dict]
    ) -> bool:
        """
        Create a group with its initial wrapped keys.

        Args:
            members: Rows of {member_id, encrypted_group_key}

        Returns:
            False if the group id is taken
        """
        async with self.async_session() as session:
            session.add(ChatGroup(id=group_id, name=name, created_by=created_by))
            for member in members:
                session.add(GroupMember(
                    group_id=group_id,
                    member_id=member['member_id'],
                    encrypted_group_key=member['encrypted_group_key'],
                    role="admin" if member['member_id'] == created_by else "member"
                ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def group_exists(self, group_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(ChatGroup.id).where(ChatGroup.id == group_id))
            return result.scalar_one_or_none() is not None

    async def add_group_member(self, group_id: str, member_id: str, encrypted_group_key: str) -> bool:
        """
        Add a member with their wrapped copy of the existing group key.

        Returns:
            False if the member already belongs to the group
        """
        async with self.async_session() as session:
            session.add(GroupMember(
                group_id=group_id,
                member_id=member_id,
                encrypted_group_key=encrypted_group_key
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def get_group_member(self, group_id: str, member_id: str) -> Optional[Dict]:
        """Get one member's row, including their wrapped key"""
        async with self.async_session() as session:
            result = await session.execute(
                select(GroupMember).where(
                    GroupMember.group_id == group_id, GroupMember.member_id == member_id
                )
            )
            member = result.scalar_one_or_none()
            return member.to_dict() if member else None

    async def list_group_members(self, group_id: str) -> List[str]:
        async with self.async_session() as session:
            result = await session.execute(
                select(GroupMember.member_id)
                .where(GroupMember.group_id == group_id)
                .order_by(GroupMember.id)
            )
            return [row[0] for row in result.all()]

    async def save_group_message(self, group_id: str, sender_id: str, ciphertext: str, iv: str) -> Dict:
        """Store one encrypted group message"""
        async with self.async_session() as session:
            message = GroupMessage(group_id=group_id, sender_id=sender_id, ciphertext=ciphertext, iv=iv)
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message.to_dict()

    async def list_group_messages(self, group_id: str, limit: int = 500) -> List[Dict]:
        """Group messages, most recent first"""
        async with self.async_session() as session:
            result = await session.execute(
                select(GroupMessage)
                .where(GroupMessage.group_id == group_id)
                .order_by(GroupMessage.created_at.desc(), GroupMessage.id.desc())
                .limit(limit)
            )
            return [message.to_dict() for message in result.scalars().all()]
