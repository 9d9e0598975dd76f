import asyncio
from datetime import datetime, timezone

from pydantic import ValidationError

from recyclink.errors import RecyclinkError, SendFailed, ServiceError
from recyclink.models.chat import (
    Conversation,
    ConversationListView,
    ConversationSummary,
    Message,
    MessageThreadView,
    MessageView,
    UserProfile,
)
from recyclink.models.store import Direction, DocumentSnapshot, Query, QuerySnapshot
from recyclink.services.documents import SERVER_TIMESTAMP, ArrayUnion
from recyclink.services.subscriptions import Subscription
from recyclink.session import Session

CHATS = "chats"
USERS = "users"
NO_MESSAGES_PREVIEW = "No messages yet"


def chat_path(conversation_id: str) -> str:
    return f"{CHATS}/{conversation_id}"


def messages_collection(conversation_id: str) -> str:
    return f"{CHATS}/{conversation_id}/messages"


def conversations_query(user_id: str) -> Query:
    return (
        Query(collection=CHATS)
        .where("participant_ids", "array_contains", user_id)
        .order("last_message_at", Direction.DESCENDING)
    )


def messages_query(conversation_id: str) -> Query:
    return Query(collection=messages_collection(conversation_id)).order("created_at")


async def get_user_profile(session: Session, uid: str) -> UserProfile | None:
    try:
        doc = await session.documents.get(f"{USERS}/{uid}")
    except Exception as exc:
        session.logger.exception("Profile lookup failed uid={} error={}", uid, str(exc))
        raise ServiceError("Failed to fetch user profile") from exc
    if doc is None:
        return None
    return UserProfile(
        id=doc.id,
        display_name=doc.data.get("name") or doc.data.get("display_name") or "User",
        photo_url=doc.data.get("photo_url"),
    )


async def _resolve_profile(session: Session, uid: str | None) -> UserProfile:
    fallback = UserProfile(id=uid or "", photo_url=session.settings.default_avatar_url)
    if not uid:
        return fallback
    try:
        profile = await get_user_profile(session, uid)
    except ServiceError:
        return fallback
    if profile is None:
        return fallback
    if not profile.photo_url:
        profile = profile.model_copy(update={"photo_url": session.settings.default_avatar_url})
    return profile


def _preview(conversation: Conversation, length: int) -> str:
    if conversation.last_message is None:
        return NO_MESSAGES_PREVIEW
    return conversation.last_message.text[:length]


def _conversations(session: Session, snapshot: QuerySnapshot) -> list[Conversation]:
    conversations = []
    for doc in snapshot.docs:
        try:
            conversations.append(Conversation.from_document(doc.id, doc.data))
        except ValidationError as exc:
            session.logger.warning("Skipping malformed conversation conversation_id={} error={}", doc.id, str(exc))
    return conversations


def _message(conversation_id: str, doc: DocumentSnapshot) -> Message:
    return Message.model_validate({**doc.data, "id": doc.id, "conversation_id": conversation_id})


async def subscribe_conversations(
    session: Session, current_user_id: str | None = None
) -> Subscription[ConversationListView]:
    user_id = current_user_id or session.require_user().id

    async def render(snapshot: QuerySnapshot) -> ConversationListView:
        conversations = _conversations(session, snapshot)
        profiles = await asyncio.gather(
            *(_resolve_profile(session, conversation.other_participant(user_id)) for conversation in conversations)
        )
        summaries = [
            ConversationSummary(
                conversation_id=conversation.id,
                other_user=profile,
                preview=_preview(conversation, session.settings.preview_length),
                unread_count=conversation.unread_count,
                is_active=conversation.id == session.active_conversation_id,
            )
            for conversation, profile in zip(conversations, profiles)
        ]
        session.logger.debug("Conversation list rendered user_id={} count={}", user_id, len(summaries))
        return ConversationListView(conversations=summaries)

    subscription = Subscription(
        f"conversations:{user_id}",
        session.documents.subscribe(conversations_query(user_id)),
        render,
        on_error=lambda exc: session.notify_error("Failed to load conversations"),
    )
    session.track(subscription)
    session.logger.info("Conversation subscription started user_id={}", user_id)
    return subscription.start()


async def subscribe_messages(
    session: Session, conversation_id: str, current_user_id: str | None = None
) -> Subscription[MessageThreadView]:
    user_id = current_user_id or session.require_user().id

    previous = session.message_subscription
    if previous is not None:
        await previous.cancel()
        session.message_subscription = None
        session.logger.debug("Previous message subscription cancelled name={}", previous.name)
    session.active_conversation_id = conversation_id

    async def render(snapshot: QuerySnapshot) -> MessageThreadView:
        messages = [_message(conversation_id, doc) for doc in snapshot.docs]
        return MessageThreadView(
            conversation_id=conversation_id,
            messages=[
                MessageView(
                    message_id=message.id,
                    text=message.text,
                    sender_id=message.sender_id,
                    sender_name=message.sender_name,
                    created_at=message.created_at,
                    read_by=message.read_by,
                    is_mine=message.sender_id == user_id,
                )
                for message in messages
            ],
        )

    async def reconcile(view: MessageThreadView) -> None:
        try:
            await mark_messages_as_read(session, conversation_id, user_id)
        except ServiceError as exc:
            session.logger.warning(
                "Read reconciliation skipped conversation_id={} error={}", conversation_id, str(exc)
            )

    subscription = Subscription(
        f"messages:{conversation_id}",
        session.documents.subscribe(messages_query(conversation_id)),
        render,
        after_render=reconcile,
        on_error=lambda exc: session.notify_error("Failed to load messages"),
    )
    session.message_subscription = subscription
    session.track(subscription)
    session.logger.info("Message subscription started conversation_id={} user_id={}", conversation_id, user_id)
    return subscription.start()


async def mark_messages_as_read(session: Session, conversation_id: str, current_user_id: str | None = None) -> int:
    """Add the reader to ``read_by`` of every message they have not read yet.

    With ``read_receipt_mode="already_read"`` the legacy predicate is used: it
    selects only messages whose ``read_by`` already holds the reader, so the
    batch is always empty and nothing is marked.
    """
    user_id = current_user_id or session.require_user().id
    query = Query(collection=messages_collection(conversation_id))
    if session.settings.read_receipt_mode == "already_read":
        session.logger.warning(
            "Legacy read receipts selected conversation_id={} user_id={} mode=already_read marks nothing",
            conversation_id,
            user_id,
        )
        query = query.where("read_by", "array_contains", user_id)

    try:
        snapshot = await session.documents.query(query)
        batch = session.documents.batch()
        pending = 0
        for doc in snapshot.docs:
            if _message(conversation_id, doc).is_read_by(user_id):
                continue
            batch.update(doc.path, {"read_by": ArrayUnion([user_id])})
            pending += 1
        if pending:
            await batch.commit()
    except Exception as exc:
        session.logger.exception(
            "Marking messages read failed conversation_id={} user_id={} error={}",
            conversation_id,
            user_id,
            str(exc),
        )
        session.notify_error("Failed to mark messages as read")
        raise ServiceError("Failed to mark messages as read") from exc

    session.logger.debug(
        "Read reconciliation complete conversation_id={} user_id={} mode={} marked={}",
        conversation_id,
        user_id,
        session.settings.read_receipt_mode,
        pending,
    )
    return pending


async def send_message(
    session: Session, conversation_id: str, text: str, sender: UserProfile | None = None
) -> str:
    sender = sender or session.require_user()
    body = (text or "").strip()
    if not body:
        raise SendFailed("Message text is empty")

    try:
        chat = await session.documents.get(chat_path(conversation_id))
        if chat is None:
            raise SendFailed("Conversation not found")
        if sender.id not in chat.data.get("participant_ids", []):
            raise SendFailed("Sender is not a participant of this conversation")

        message_id = await session.documents.add(
            messages_collection(conversation_id),
            {
                "text": body,
                "sender_id": sender.id,
                "sender_name": sender.display_name or "User",
                "read_by": [sender.id],
                "created_at": SERVER_TIMESTAMP,
            },
        )
        # not atomic with the append above; a failure here leaves the message in place
        await session.documents.update(
            chat_path(conversation_id),
            {
                "last_message": {
                    "text": body,
                    "sender_id": sender.id,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
                "last_message_at": SERVER_TIMESTAMP,
            },
        )
    except SendFailed as exc:
        session.logger.warning(
            "Message rejected conversation_id={} sender_id={} error={}", conversation_id, sender.id, str(exc)
        )
        session.notify_error(str(exc))
        raise
    except Exception as exc:
        session.logger.exception(
            "Sending message failed conversation_id={} sender_id={} error={}", conversation_id, sender.id, str(exc)
        )
        session.notify_error("Failed to send message")
        raise SendFailed("Failed to send message") from exc

    session.logger.info(
        "Message sent conversation_id={} message_id={} sender_id={}", conversation_id, message_id, sender.id
    )
    return message_id


async def find_existing_conversation(session: Session, user_a: str, user_b: str) -> str | None:
    snapshot = await session.documents.query(Query(collection=CHATS).where("participant_ids", "array_contains", user_a))
    for doc in snapshot.docs:
        if user_b in doc.data.get("participant_ids", []):
            return doc.id
    return None


async def start_conversation(session: Session, other_user_id: str, current_user_id: str | None = None) -> str:
    user_id = current_user_id or session.require_user().id
    if user_id == other_user_id:
        raise ValueError("Cannot start conversation with self")

    try:
        existing = await find_existing_conversation(session, user_id, other_user_id)
        if existing is not None:
            session.logger.info(
                "Conversation reused conversation_id={} user_id={} other_user_id={}", existing, user_id, other_user_id
            )
            return existing
        # check-then-create: concurrent starts from both sides can still create two chats
        conversation_id = await session.documents.add(
            CHATS,
            {
                "participant_ids": [user_id, other_user_id],
                "created_at": SERVER_TIMESTAMP,
                "last_message_at": SERVER_TIMESTAMP,
            },
        )
    except RecyclinkError:
        raise
    except Exception as exc:
        session.logger.exception(
            "Starting conversation failed user_id={} other_user_id={} error={}", user_id, other_user_id, str(exc)
        )
        session.notify_error("Failed to start chat")
        raise ServiceError("Failed to start chat") from exc

    session.logger.info(
        "Conversation created conversation_id={} user_id={} other_user_id={}", conversation_id, user_id, other_user_id
    )
    return conversation_id
