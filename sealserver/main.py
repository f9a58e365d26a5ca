"""
FastAPI server for end-to-end encrypted chat.

This server:
- Handles user registration and authentication
- Publishes identity public keys (the key directory)
- Stores per-member wrapped group keys
- Stores and serves ciphertext rows; it never sees private keys or
  plaintext and never interprets ciphertext
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from seal.primitives import EncodingError, b64decode, load_public_key

from .auth import Token, create_access_token, verify_token
from .config import ServerSettings, settings
from .database import Database

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# Pydantic models for API
class UserCredentials(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1)


class PublicKeyUpload(BaseModel):
    public_key: str


class DirectMessageIn(BaseModel):
    recipient_id: str
    ciphertext: str
    iv: str
    wrapped_key: str


class GroupMemberKey(BaseModel):
    member_id: str
    encrypted_group_key: str


class GroupCreate(BaseModel):
    group_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    members: List[GroupMemberKey]


class GroupMessageIn(BaseModel):
    ciphertext: str
    iv: str


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_settings(request: Request) -> ServerSettings:
    return request.app.state.settings


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    config: ServerSettings = Depends(get_settings),
) -> str:
    """Resolve the bearer token to a username"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    username = verify_token(credentials.credentials, config)
    if not username:
        raise HTTPException(status_code=401, detail="Invalid token")
    return username


async def require_member(db: Database, group_id: str, username: str):
    if not await db.group_exists(group_id):
        raise HTTPException(status_code=404, detail="Group not found")
    if await db.get_group_member(group_id, username) is None:
        raise HTTPException(status_code=403, detail="Not a member of this group")


def issue_token(username: str, config: ServerSettings) -> Token:
    access_token = create_access_token(
        data={"sub": username},
        expires_delta=timedelta(minutes=config.access_token_expire_minutes),
        config=config
    )
    return Token(access_token=access_token, token_type="bearer", username=username)


def create_app(config: ServerSettings = settings, database: Optional[Database] = None) -> FastAPI:
    """
    Build the application.

    Args:
        config: Server settings
        database: Database to use instead of one built from config
    """
    db = database or Database(config.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized")
        yield
        await db.dispose()
        logger.info("Server shutting down")

    app = FastAPI(
        title="Seal Chat Key Directory",
        description="Public keys, wrapped group keys and ciphertext for end-to-end encrypted chat",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db
    app.state.settings = config

    @app.post("/api/register", response_model=Token)
    async def register(user_data: UserCredentials, db: Database = Depends(get_db)):
        """
        Register a new user account.

        The client publishes its public key separately, after its first
        successful sign-in.
        """
        user = await db.create_user(username=user_data.username, password=user_data.password)
        if not user:
            raise HTTPException(status_code=400, detail="Username already exists")
        logger.info("Registered user %s", user.username)
        return issue_token(user.username, config)

    @app.post("/api/login", response_model=Token)
    async def login(user_data: UserCredentials, db: Database = Depends(get_db)):
        """Authenticate a user and return JWT token"""
        user = await db.authenticate_user(user_data.username, user_data.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid username or password")
        return issue_token(user.username, config)

    @app.get("/api/users")
    async def list_users(db: Database = Depends(get_db)):
        """List all registered users"""
        return {"users": await db.list_users()}

    @app.put("/api/keys/{username}")
    async def publish_key(
        username: str,
        upload: PublicKeyUpload,
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Publish the caller's identity public key"""
        if user != username:
            raise HTTPException(status_code=403, detail="Not authorized")
        try:
            load_public_key(b64decode(upload.public_key))
        except EncodingError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if not await db.set_public_key(username, upload.public_key):
            raise HTTPException(status_code=404, detail="User not found")
        logger.info("Published public key for %s", username)
        return {"status": "success"}

    @app.get("/api/keys/{username}")
    async def get_key(username: str, db: Database = Depends(get_db)):
        """Get a user's public key. Public: anyone may encrypt to anyone."""
        public_key = await db.get_public_key(username)
        if public_key is None:
            raise HTTPException(status_code=404, detail="No public key on record")
        return {"username": username, "public_key": public_key}

    @app.post("/api/messages")
    async def send_message(
        message: DirectMessageIn,
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Store an encrypted direct message from the caller"""
        if await db.get_user(message.recipient_id) is None:
            raise HTTPException(status_code=404, detail="Recipient not found")
        return await db.save_direct_message(
            sender_id=user,
            recipient_id=message.recipient_id,
            ciphertext=message.ciphertext,
            iv=message.iv,
            wrapped_key=message.wrapped_key
        )

    @app.get("/api/messages")
    async def list_messages(
        peer: Optional[str] = None,
        limit: int = Query(default=500, ge=1, le=1000),
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Direct messages the caller sent or received, most recent first"""
        return {"messages": await db.list_direct_messages(user, peer=peer, limit=limit)}

    @app.post("/api/messages/{message_id}/read")
    async def mark_read(
        message_id: int,
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        if not await db.mark_read(message_id, user):
            raise HTTPException(status_code=404, detail="Message not found")
        return {"status": "success"}

    @app.post("/api/groups")
    async def create_group(
        group: GroupCreate,
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Create a group with one wrapped key per initial member"""
        member_ids = [member.member_id for member in group.members]
        if user not in member_ids:
            raise HTTPException(status_code=400, detail="Creator must hold a copy of the group key")
        if len(set(member_ids)) != len(member_ids):
            raise HTTPException(status_code=400, detail="Duplicate member")

        created = await db.create_group(
            group_id=group.group_id,
            name=group.name,
            created_by=user,
            members=[member.model_dump() for member in group.members]
        )
        if not created:
            raise HTTPException(status_code=409, detail="Group already exists")
        logger.info("Created group %s with %d members", group.group_id, len(member_ids))
        return {"status": "success", "group_id": group.group_id}

    @app.post("/api/groups/{group_id}/members")
    async def add_member(
        group_id: str,
        member: GroupMemberKey,
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """Add a member; only existing members hold the key to rewrap"""
        await require_member(db, group_id, user)
        if await db.get_user(member.member_id) is None:
            raise HTTPException(status_code=404, detail="User not found")
        if not await db.add_group_member(group_id, member.member_id, member.encrypted_group_key):
            raise HTTPException(status_code=409, detail="Already a member")
        logger.info("%s added %s to group %s", user, member.member_id, group_id)
        return {"status": "success"}

    @app.get("/api/groups/{group_id}/members")
    async def list_members(
        group_id: str,
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        await require_member(db, group_id, user)
        return {"members": await db.list_group_members(group_id)}

    @app.get("/api/groups/{group_id}/members/{member_id}/key")
    async def get_member_key(
        group_id: str,
        member_id: str,
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        """The caller's own wrapped copy of the group key"""
        if user != member_id:
            raise HTTPException(status_code=403, detail="Not authorized")
        record = await db.get_group_member(group_id, member_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Not a member of this group")
        return record

    @app.post("/api/groups/{group_id}/messages")
    async def send_group_message(
        group_id: str,
        message: GroupMessageIn,
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        await require_member(db, group_id, user)
        return await db.save_group_message(group_id, user, message.ciphertext, message.iv)

    @app.get("/api/groups/{group_id}/messages")
    async def list_group_messages(
        group_id: str,
        limit: int = Query(default=500, ge=1, le=1000),
        user: str = Depends(current_user),
        db: Database = Depends(get_db),
    ):
        await require_member(db, group_id, user)
        return {"messages": await db.list_group_messages(group_id, limit=limit)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=settings.host, port=settings.port)
