"""
Pydantic models for request/response validation.
"""
from pydantic import BaseModel
from typing import List, Optional


class UserCreate(BaseModel):
    """Request model for registering a user."""
    name: str
    email: str


class UserOut(BaseModel):
    id: int
    user_code: str
    name: str
    email: str
    online: bool
    last_seen: Optional[str] = None
    created_at: str


class UserCreated(UserOut):
    """Returned once at registration; the token is not stored in clear."""
    api_token: str


class FriendRequestCreate(BaseModel):
    user_code: str


class DirectChatCreate(BaseModel):
    user_code: str


class GroupChatCreate(BaseModel):
    name: str
    member_codes: List[str] = []


class ChatOut(BaseModel):
    id: int
    type: str  # 'direct' or 'group'
    name: Optional[str] = None
    admin_id: Optional[int] = None
    participants: List[int]
    last_message_id: Optional[int] = None
    last_activity: str
    created_at: str
    unread_count: Optional[int] = None


class MessageOut(BaseModel):
    id: int
    chat_id: int
    sender_id: int
    type: str  # 'text', 'image', 'voice', 'file'
    content: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    status: str
    reply_to: Optional[int] = None
    edited_at: Optional[str] = None
    created_at: str


class ShareResponse(BaseModel):
    """Response model after creating a share."""
    share_code: str
    expires_at: str
    max_downloads: int


class ShareInfo(BaseModel):
    """Share metadata; never exposes the object URL."""
    id: int
    share_code: str
    uploader_id: int
    file_name: str
    original_name: str
    file_size: int
    content_type: str
    created_at: str
    expires_at: str
    download_count: int
    max_downloads: int
    is_active: bool
    can_download: bool
    downloads_left: int
    seconds_left: int


class SocketEvent(BaseModel):
    """Inbound WebSocket event."""
    type: str  # 'join_room', 'send_message', 'mark_read', 'ping'
    chat_id: Optional[int] = None
    content: Optional[str] = None
    message_type: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    reply_to: Optional[int] = None
    client_ref: Optional[str] = None
