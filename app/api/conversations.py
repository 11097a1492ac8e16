from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_broadcaster
from app.core.database import get_db
from app.core.security import CurrentUser, get_current_user
from app.realtime.broadcaster import Broadcaster
from app.schemas.conversation import (
	ConversationCreate, ConversationDetail, ConversationSummary, MembersAdd, MemberResponse,
	ReadResponse, UnreadCountResponse
)
from app.schemas.message import MessagePage
from app.services.conversation_service import ConversationService
from app.services.message_service import MessageService
from app.services.unread_service import UnreadService


router = APIRouter(tags=["conversations"])


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	"""Conversations of the caller with last message and unread count"""
	return await ConversationService(db).list_user_conversations(current_user.id)


@router.post("/conversations", response_model=ConversationDetail)
async def create_conversation(
	conversation_in: ConversationCreate,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	service = ConversationService(db, broadcaster)
	conversation, _ = await service.create_conversation(
		created_by=current_user.id,
		conversation_type=conversation_in.type,
		member_ids=conversation_in.member_ids,
		name=conversation_in.name,
		description=conversation_in.description,
		is_temporary=conversation_in.is_temporary,
		expires_at=conversation_in.expires_at
	)
	return await service.get_conversation_detail(conversation.id, current_user.id)


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
	conversation_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	return await ConversationService(db).get_conversation_detail(conversation_id, current_user.id)


@router.get("/conversations/{conversation_id}/members", response_model=List[MemberResponse])
async def get_members(
	conversation_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	service = ConversationService(db)
	await service.require_membership(conversation_id, current_user.id)
	return await service.get_members(conversation_id)


@router.get("/conversations/{conversation_id}/messages", response_model=MessagePage)
async def get_messages(
	conversation_id: int,
	limit: int = Query(50, ge=1, le=100),
	before_id: Optional[int] = None,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	"""Page of messages, oldest first; marks the conversation read"""
	service = MessageService(db, broadcaster)
	return await service.get_conversation_messages(conversation_id, current_user.id, limit, before_id)


@router.post("/conversations/{conversation_id}/members", response_model=List[MemberResponse])
async def add_members(
	conversation_id: int,
	members_in: MembersAdd,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	service = ConversationService(db, broadcaster)
	await service.add_members(conversation_id, members_in.member_ids, current_user)
	return await service.get_members(conversation_id)


@router.delete("/conversations/{conversation_id}/members/{user_id}")
async def remove_member(
	conversation_id: int,
	user_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	await ConversationService(db, broadcaster).remove_member(conversation_id, user_id, current_user)
	return {"conversation_id": conversation_id, "removed": user_id}


@router.post("/conversations/{conversation_id}/read", response_model=ReadResponse)
async def mark_conversation_read(
	conversation_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	last_read_at, flipped = await MessageService(db, broadcaster).mark_read(conversation_id, current_user.id)
	return ReadResponse(conversation_id=conversation_id, last_read_at=last_read_at, marked_message_ids=flipped)


@router.get("/conversations/{conversation_id}/unread-count", response_model=UnreadCountResponse)
async def get_conversation_unread_count(
	conversation_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	await ConversationService(db).require_membership(conversation_id, current_user.id)
	count = await UnreadService(db).compute_unread_count(conversation_id, current_user.id)
	return UnreadCountResponse(conversation_id=conversation_id, unread_count=count)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	"""Total unread messages across all of the caller's conversations"""
	count = await UnreadService(db).total_unread(current_user.id)
	return UnreadCountResponse(unread_count=count)
