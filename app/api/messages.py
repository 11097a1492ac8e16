from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_broadcaster, get_notifier
from app.core.database import get_db
from app.core.security import CurrentUser, get_current_user
from app.realtime.broadcaster import Broadcaster
from app.realtime.notifications import Notifier
from app.schemas.message import (
	EnrichedMessage, MessageCreate, QuoteReplyCreate, ReactionToggle, ReactionToggleResponse,
	MentionsCreate, MentionsResponse, MentionedMessage, MentionReadResponse, ReferenceCreate, ReferenceResponse
)
from app.services.message_service import MessageService
from app.services.reaction_service import ReactionService


router = APIRouter(tags=["messages"])


@router.post("/messages", response_model=EnrichedMessage)
async def send_message(
	message_in: MessageCreate,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster),
	notifier: Notifier = Depends(get_notifier)
):
	"""Send to a conversation, or to a user by receiver_id which opens the direct conversation if needed"""
	service = MessageService(db, broadcaster, notifier)
	return await service.send_message(
		current_user,
		message_in.content,
		conversation_id=message_in.conversation_id,
		receiver_id=message_in.receiver_id,
		message_type=message_in.message_type,
		attachments=[attachment.model_dump() for attachment in message_in.attachments],
		metadata=message_in.metadata,
		gif=message_in.gif,
		quoted_message_id=message_in.quoted_message_id,
		mentioned_user_ids=message_in.mentioned_user_ids
	)


@router.get("/messages/{message_id}", response_model=EnrichedMessage)
async def get_message(
	message_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	return await MessageService(db).get_full_message(message_id, current_user.id)


@router.post("/messages/{message_id}/reactions", response_model=ReactionToggleResponse)
async def toggle_reaction(
	message_id: int,
	reaction_in: ReactionToggle,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	return await ReactionService(db, broadcaster).toggle_reaction(message_id, current_user, reaction_in.emoji)


@router.post("/messages/{message_id}/quote", response_model=EnrichedMessage)
async def quote_reply(
	message_id: int,
	reply_in: QuoteReplyCreate,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster),
	notifier: Notifier = Depends(get_notifier)
):
	service = MessageService(db, broadcaster, notifier)
	return await service.send_quoted_reply(
		current_user,
		message_id,
		reply_in.content,
		message_type=reply_in.message_type,
		attachments=[attachment.model_dump() for attachment in reply_in.attachments],
		metadata=reply_in.metadata,
		gif=reply_in.gif,
		mentioned_user_ids=reply_in.mentioned_user_ids
	)


@router.post("/messages/{message_id}/mentions", response_model=MentionsResponse)
async def attach_mentions(
	message_id: int,
	mentions_in: MentionsCreate,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	"""Returns only the mentions that did not exist before"""
	mentions = await MessageService(db, broadcaster).attach_mentions(
		message_id, current_user, mentions_in.mentioned_user_ids
	)
	return MentionsResponse(mentions=mentions)


@router.post("/messages/{message_id}/references", response_model=ReferenceResponse)
async def add_reference(
	message_id: int,
	reference_in: ReferenceCreate,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	return await MessageService(db).add_reference(
		message_id,
		current_user,
		reference_in.ref_domain,
		reference_in.target_id,
		reference_in.ref_type,
		reference_in.label
	)


@router.post("/messages/{message_id}/read")
async def mark_message_read(
	message_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	message = await MessageService(db, broadcaster).mark_message_read(message_id, current_user.id)
	return {"message_id": message.id, "read_status": message.read_status, "read_at": message.read_at}


@router.delete("/messages/{message_id}")
async def delete_message(
	message_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	await MessageService(db, broadcaster).delete_message(message_id, current_user)
	return {"message_id": message_id, "deleted": True}


@router.get("/mentions", response_model=List[MentionedMessage])
async def list_mentions(
	is_read: Optional[bool] = None,
	limit: int = Query(50, ge=1, le=100),
	offset: int = Query(0, ge=0),
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	"""Mentions of the caller, newest first"""
	return await MessageService(db).list_my_mentions(current_user.id, is_read, limit, offset)


@router.post("/mentions/{mention_id}/read", response_model=MentionReadResponse)
async def mark_mention_read(
	mention_id: int,
	current_user: CurrentUser = Depends(get_current_user),
	db: Session = Depends(get_db)
):
	return await MessageService(db).mark_mention_read(mention_id, current_user.id)
