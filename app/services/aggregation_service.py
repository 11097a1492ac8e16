"""
Batch assembly of message aggregates.

Every message read path goes through here so reactions, quotes, mentions and
references are fetched with one query per kind for the whole page, never one
query per message.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from sqlalchemy.orm import Session, aliased
from app.models.message import Message, MessageReaction, MessageQuote, MessageMention, MessageReference
from app.models.user import User
from app.schemas.message import (
	EnrichedMessage, ReactionSummary, ReactionUser, QuoteRef, MentionRef, MessageReferenceRef
)
import logging

logger = logging.getLogger(__name__)


@dataclass
class MessageAggregates:
	reactions: List[ReactionSummary] = field(default_factory=list)
	quote: Optional[QuoteRef] = None
	mentions: List[MentionRef] = field(default_factory=list)
	references: List[MessageReferenceRef] = field(default_factory=list)


class AggregationService:
	def __init__(self, db: Session):
		self.db = db

	def _reactions(self, message_ids: List[int]) -> Dict[int, List[ReactionSummary]]:
		rows = self.db.query(MessageReaction, User.name, User.avatar_url).outerjoin(
			User, User.id == MessageReaction.user_id
		).filter(
			MessageReaction.message_id.in_(message_ids)
		).order_by(MessageReaction.created_at, MessageReaction.id).all()

		# emoji groups keep the order of their first reaction
		grouped: Dict[int, Dict[str, List[ReactionUser]]] = defaultdict(dict)
		for reaction, user_name, avatar_url in rows:
			grouped[reaction.message_id].setdefault(reaction.emoji, []).append(
				ReactionUser(
					user_id=reaction.user_id,
					user_name=user_name,
					user_photo=avatar_url,
					created_at=reaction.created_at
				)
			)

		return {
			message_id: [
				ReactionSummary(emoji=emoji, count=len(users), users=users)
				for emoji, users in by_emoji.items()
			]
			for message_id, by_emoji in grouped.items()
		}

	def _quotes(self, message_ids: List[int]) -> Dict[int, QuoteRef]:
		quoted = aliased(Message)
		quoted_sender = aliased(User)
		rows = self.db.query(
			MessageQuote, quoted.content, quoted.message_type, quoted.sender_id, quoted_sender.name
		).outerjoin(
			quoted, quoted.id == MessageQuote.quoted_message_id
		).outerjoin(
			quoted_sender, quoted_sender.id == quoted.sender_id
		).filter(
			MessageQuote.message_id.in_(message_ids)
		).all()

		return {
			quote.message_id: QuoteRef(
				quoted_message_id=quote.quoted_message_id,
				snippet=quote.snippet,
				created_at=quote.created_at,
				quoted_message=content,
				quoted_message_type=message_type,
				quoted_sender_id=sender_id,
				quoted_sender_name=sender_name
			)
			for quote, content, message_type, sender_id, sender_name in rows
		}

	def _mentions(self, message_ids: List[int]) -> Dict[int, List[MentionRef]]:
		mentioned = aliased(User)
		author = aliased(User)
		rows = self.db.query(MessageMention, mentioned.name, author.name).outerjoin(
			mentioned, mentioned.id == MessageMention.mentioned_user_id
		).outerjoin(
			author, author.id == MessageMention.mentioned_by
		).filter(
			MessageMention.message_id.in_(message_ids)
		).order_by(MessageMention.created_at, MessageMention.id).all()

		result: Dict[int, List[MentionRef]] = defaultdict(list)
		for mention, mentioned_name, author_name in rows:
			result[mention.message_id].append(to_mention_ref(mention, mentioned_name, author_name))
		return result

	def _references(self, message_ids: List[int]) -> Dict[int, List[MessageReferenceRef]]:
		rows = self.db.query(MessageReference).filter(
			MessageReference.message_id.in_(message_ids)
		).order_by(MessageReference.created_at, MessageReference.id).all()

		result: Dict[int, List[MessageReferenceRef]] = defaultdict(list)
		for reference in rows:
			result[reference.message_id].append(
				MessageReferenceRef(
					id=reference.id,
					ref_domain=reference.ref_domain,
					target_id=reference.target_id,
					ref_type=reference.ref_type,
					label=reference.label,
					created_at=reference.created_at
				)
			)
		return result

	def enrich_messages(self, message_ids: Iterable[int]) -> Dict[int, MessageAggregates]:
		"""
		Aggregates for every id in `message_ids`.

		Issues exactly one query per aggregate kind regardless of batch size,
		and none at all for an empty batch. Messages without aggregates get
		empty defaults.
		"""
		ids = list(dict.fromkeys(message_ids))
		if not ids:
			return {}

		reactions = self._reactions(ids)
		quotes = self._quotes(ids)
		mentions = self._mentions(ids)
		references = self._references(ids)

		return {
			message_id: MessageAggregates(
				reactions=reactions.get(message_id, []),
				quote=quotes.get(message_id),
				mentions=mentions.get(message_id, []),
				references=references.get(message_id, [])
			)
			for message_id in ids
		}

	def hydrate(self, rows: Sequence[Tuple[Message, Optional[str]]]) -> List[EnrichedMessage]:
		"""Attach aggregates to (message, sender_name) rows, keeping their order"""
		aggregates = self.enrich_messages(message.id for message, _ in rows)
		return [
			to_enriched(message, sender_name, aggregates[message.id])
			for message, sender_name in rows
		]

	def load_messages(self, message_ids: Iterable[int]) -> List[EnrichedMessage]:
		ids = list(dict.fromkeys(message_ids))
		if not ids:
			return []
		rows = self.db.query(Message, User.name).outerjoin(
			User, User.id == Message.sender_id
		).filter(Message.id.in_(ids)).all()
		by_id = {message.id: (message, name) for message, name in rows}
		return self.hydrate([by_id[message_id] for message_id in ids if message_id in by_id])

	def reaction_summary(self, message_id: int) -> List[ReactionSummary]:
		return self._reactions([message_id]).get(message_id, [])


def to_mention_ref(mention: MessageMention, mentioned_name: Optional[str], author_name: Optional[str]) -> MentionRef:
	return MentionRef(
		id=mention.id,
		mentioned_user_id=mention.mentioned_user_id,
		mentioned_user_name=mentioned_name,
		mentioned_by=mention.mentioned_by,
		mentioned_by_name=author_name,
		is_read=mention.is_read,
		created_at=mention.created_at,
		read_at=mention.read_at
	)


def to_enriched(message: Message, sender_name: Optional[str], aggregates: MessageAggregates) -> EnrichedMessage:
	return EnrichedMessage(
		id=message.id,
		conversation_id=message.conversation_id,
		sender_id=message.sender_id,
		sender_name=sender_name,
		receiver_id=message.receiver_id,
		content=message.content,
		message_type=message.message_type,
		attachments=message.attachments or [],
		metadata=message.message_metadata or {},
		created_at=message.created_at,
		read_status=message.read_status,
		read_at=message.read_at,
		reactions=aggregates.reactions,
		quote=aggregates.quote,
		mentions=aggregates.mentions,
		references=aggregates.references
	)
