import pytest
from fastapi import HTTPException

from coachdesk.models.messaging import AnnouncementRecipient, Conversation, Message
from coachdesk.routes.messaging_routes import (
    CreateAnnouncementRequest,
    SendMessageRequest,
    get_conversation,
    list_announcements,
    list_conversations,
    mark_announcement_read,
    post_announcement,
    send_message,
)


@pytest.fixture(autouse=True)
def pushes(monkeypatch: pytest.MonkeyPatch) -> list:
    sent = []
    monkeypatch.setattr(
        'coachdesk.routes.messaging_routes.send_push_to_users',
        lambda _db, user_ids, title, body, url: sent.append((list(user_ids), title, body, url)),
    )
    return sent


def test_client_message_opens_conversation_and_notifies_coach(db, coach, client_user, pushes, event_bus) -> None:
    changes = []
    event_bus.subscribe('messages', changes.append)

    message = send_message(data=SendMessageRequest(content='Running late'), current_user=client_user, db=db).message

    conversation = db.query(Conversation).one()
    assert message.conversation_id == conversation.id
    assert message.sender_id == client_user.id
    assert conversation.last_message_at is not None
    assert pushes == [([coach.id], 'Message from Jamie Lee', 'Running late', '/messages')]
    assert changes[0].audience == (client_user.id, coach.id)


def test_coach_message_needs_a_target(db, coach) -> None:
    with pytest.raises(HTTPException) as exception_info:
        send_message(data=SendMessageRequest(content='Hello'), current_user=coach, db=db)

    assert exception_info.value.detail == 'conversationId or clientId is required'


def test_coach_cannot_message_other_coaches_clients(db, coach, make_user) -> None:
    other_coach = make_user('Other Coach', role='coach')
    stranger = make_user('Riley Stone', coach=other_coach)

    with pytest.raises(HTTPException) as exception_info:
        send_message(data=SendMessageRequest(content='Hello', client_id=stranger.id), current_user=coach, db=db)

    assert exception_info.value.status_code == 404


def test_media_message_push_uses_preview(db, coach, client_user, pushes) -> None:
    request = SendMessageRequest(
        content='party.gif',
        content_type='GIF',
        media_url='https://cdn.example.com/party.gif',
        client_id=client_user.id,
    )

    send_message(data=request, current_user=coach, db=db)

    assert pushes == [([client_user.id], 'Message from Casey Coach', 'Sent a GIF', '/messages')]


def test_reading_a_conversation_marks_messages_read(db, coach, client_user) -> None:
    send_message(data=SendMessageRequest(content='One', client_id=client_user.id), current_user=coach, db=db)
    send_message(data=SendMessageRequest(content='Two', client_id=client_user.id), current_user=coach, db=db)
    conversation = db.query(Conversation).one()

    assert list_conversations(current_user=client_user, db=db).conversations[0].unread_count == 2

    detail = get_conversation(conversation_id=conversation.id, current_user=client_user, db=db)

    assert [message.content for message in detail.messages] == ['One', 'Two']
    assert detail.conversation.unread_count == 0
    assert db.query(Message).filter(Message.read_at.is_(None)).count() == 0


def test_other_clients_cannot_read_conversation(db, coach, client_user, make_user) -> None:
    send_message(data=SendMessageRequest(content='Private', client_id=client_user.id), current_user=coach, db=db)
    conversation = db.query(Conversation).one()
    stranger = make_user('Other Client', coach=coach)

    with pytest.raises(HTTPException) as exception_info:
        get_conversation(conversation_id=conversation.id, current_user=stranger, db=db)

    assert exception_info.value.status_code == 403


def test_announcement_reaches_every_client(db, coach, client_user, make_user, pushes) -> None:
    second = make_user('Alex Kim', coach=coach)

    announcement = post_announcement(
        data=CreateAnnouncementRequest(content='Holiday hours', title='Heads up', is_pinned=True),
        coach=coach,
        db=db,
    ).announcement

    assert announcement.recipient_count == 2
    assert announcement.read_count == 0
    assert sorted(pushes[0][0]) == sorted([client_user.id, second.id])
    assert pushes[0][1] == 'Announcement from Casey Coach'


def test_announcement_read_tracking(db, coach, client_user) -> None:
    announcement = post_announcement(
        data=CreateAnnouncementRequest(content='New schedule'),
        coach=coach,
        db=db,
    ).announcement

    assert mark_announcement_read(announcement_id=announcement.id, current_user=client_user, db=db) == {'success': True}

    client_view = list_announcements(current_user=client_user, db=db).announcements
    coach_view = list_announcements(current_user=coach, db=db).announcements
    assert client_view[0].read_at is not None
    assert coach_view[0].recipient_count == 1
    assert coach_view[0].read_count == 1
    assert db.query(AnnouncementRecipient).one().read_at is not None


def test_pinned_announcements_come_first(db, coach, client_user) -> None:
    post_announcement(data=CreateAnnouncementRequest(content='Pinned', is_pinned=True), coach=coach, db=db)
    post_announcement(data=CreateAnnouncementRequest(content='Latest'), coach=coach, db=db)

    contents = [item.content for item in list_announcements(current_user=client_user, db=db).announcements]

    assert contents == ['Pinned', 'Latest']


def test_reading_unknown_announcement(db, client_user) -> None:
    with pytest.raises(HTTPException) as exception_info:
        mark_announcement_read(announcement_id=42, current_user=client_user, db=db)

    assert exception_info.value.status_code == 404
