import asyncio

import pytest
import pytest_asyncio
from bson import ObjectId

from chatserver.core.exceptions import ForbiddenException, NotFoundException, ValidationException
from chatserver.services.message_service import DeliveryStatus
from conftest import drain, of_type


@pytest_asyncio.fixture
async def group(conversation_service):
    return await conversation_service.create_group("u1", "Friends", ["u2", "u3"])


@pytest.mark.asyncio
async def test_access_chat_is_lookup_or_create(conversation_service):
    first, created = await conversation_service.access_chat("u1", "u2")
    again, created_again = await conversation_service.access_chat("u1", "u2")
    reverse, created_reverse = await conversation_service.access_chat("u2", "u1")

    assert created is True
    assert created_again is False and created_reverse is False
    assert first.id == again.id == reverse.id
    assert set(first.users) == {"u1", "u2"}
    assert first.is_group_chat is False
    assert first.group_admin is None


@pytest.mark.asyncio
async def test_access_chat_with_self_is_rejected(conversation_service):
    with pytest.raises(ValidationException):
        await conversation_service.access_chat("u1", "u1")


@pytest.mark.asyncio
async def test_create_group_makes_caller_admin_and_member(group):
    assert group.is_group_chat is True
    assert group.chat_name == "Friends"
    assert set(group.users) == {"u1", "u2", "u3"}
    assert group.group_admin == "u1"


@pytest.mark.asyncio
@pytest.mark.parametrize("users", [["u2"], ["u2", "u2"], ["u1", "u2"], []])
async def test_create_group_needs_two_other_users(conversation_service, users):
    with pytest.raises(ValidationException):
        await conversation_service.create_group("u1", "Too small", users)


@pytest.mark.asyncio
async def test_create_group_requires_name(conversation_service):
    with pytest.raises(ValidationException):
        await conversation_service.create_group("u1", "   ", ["u2", "u3"])


@pytest.mark.asyncio
async def test_rename_is_admin_only(conversation_service, group):
    with pytest.raises(ForbiddenException):
        await conversation_service.rename_group("u2", group.id, "Hijacked")

    renamed = await conversation_service.rename_group("u1", group.id, "Best friends")
    assert renamed.chat_name == "Best friends"


@pytest.mark.asyncio
async def test_group_actions_on_direct_chat_are_rejected(conversation_service):
    direct, _ = await conversation_service.access_chat("u1", "u2")

    with pytest.raises(ValidationException):
        await conversation_service.rename_group("u1", direct.id, "Nope")
    with pytest.raises(ValidationException):
        await conversation_service.add_to_group("u1", direct.id, "u3")


@pytest.mark.asyncio
async def test_non_admin_cannot_change_members(conversation_service, group):
    with pytest.raises(ForbiddenException):
        await conversation_service.add_to_group("u2", group.id, "u4")
    with pytest.raises(ForbiddenException):
        await conversation_service.remove_from_group("u2", group.id, "u3")

    chats, _ = await conversation_service.fetch_chats("u1")
    assert set(chats[0].users) == {"u1", "u2", "u3"}


@pytest.mark.asyncio
async def test_added_member_can_post_immediately(conversation_service, message_service, connect, group):
    newcomer = await connect("u4")

    updated = await conversation_service.add_to_group("u1", group.id, "u4")
    assert "u4" in updated.users

    outcome = await message_service.submit_message("u4", group.id, "hi, I'm new")
    assert outcome.ok

    member = await connect("u2")
    await message_service.submit_message("u1", group.id, "welcome")
    assert [f["data"]["content"] for f in _drain(newcomer)] == ["welcome"]
    assert [f["data"]["content"] for f in _drain(member)] == ["welcome"]


@pytest.mark.asyncio
async def test_adding_existing_member_is_a_no_op(conversation_service, group):
    updated = await conversation_service.add_to_group("u1", group.id, "u2")

    assert sorted(updated.users) == ["u1", "u2", "u3"]


@pytest.mark.asyncio
async def test_removed_member_loses_access_and_room_join(conversation_service, message_service, registry, connect, group):
    removed = await connect("u3")
    registry.join_room(removed, group.id)

    updated = await conversation_service.remove_from_group("u1", group.id, "u3")

    assert "u3" not in updated.users
    assert not registry.has_joined(removed, group.id)
    outcome = await message_service.submit_message("u3", group.id, "still here?")
    assert outcome.status is DeliveryStatus.FORBIDDEN

    await message_service.submit_message("u1", group.id, "members only")
    assert _drain(removed) == []


@pytest.mark.asyncio
async def test_admin_cannot_be_removed(conversation_service, group):
    with pytest.raises(ForbiddenException) as exc_info:
        await conversation_service.remove_from_group("u1", group.id, "u1")

    assert exc_info.value.code == "ADMIN_REMOVAL_FORBIDDEN"


@pytest.mark.asyncio
async def test_removing_non_member_is_not_found(conversation_service, group):
    with pytest.raises(NotFoundException):
        await conversation_service.remove_from_group("u1", group.id, "u9")


@pytest.mark.asyncio
async def test_delete_group_cascades_messages(conversation_service, message_service, message_repo, registry, connect, group):
    viewer = await connect("u2")
    registry.join_room(viewer, group.id)
    await message_service.submit_message("u1", group.id, "one")
    await message_service.submit_message("u2", group.id, "two")

    with pytest.raises(ForbiddenException):
        await conversation_service.delete_chat("u2", group.id)

    await conversation_service.delete_chat("u1", group.id)

    assert await message_repo.count_for_chat(ObjectId(group.id)) == 0
    assert not registry.has_joined(viewer, group.id)
    with pytest.raises(NotFoundException):
        await message_service.get_history("u1", group.id)
    outcome = await message_service.submit_message("u1", group.id, "anyone?")
    assert outcome.status is DeliveryStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_send_racing_with_delete_leaves_no_orphan(conversation_service, message_service, message_repo, connect, group, monkeypatch):
    viewer = await connect("u2")
    create = message_service._message_repo.create

    async def delete_then_create(chat_id, sender_id, content):
        # the chat disappears after the sender passed the membership check
        await conversation_service.delete_chat("u1", group.id)
        return await create(chat_id, sender_id, content)

    monkeypatch.setattr(message_service._message_repo, "create", delete_then_create)

    outcome = await message_service.submit_message("u1", group.id, "too late")

    assert outcome.status is DeliveryStatus.NOT_FOUND
    assert await message_repo.count_for_chat(ObjectId(group.id)) == 0
    assert _drain(viewer) == []


@pytest.mark.asyncio
async def test_fetch_chats_pages_with_cursor(conversation_service):
    for other in ("u2", "u3", "u4"):
        await conversation_service.access_chat("u1", other)
        await asyncio.sleep(0.01)

    first, cursor = await conversation_service.fetch_chats("u1", limit=2)
    rest, end = await conversation_service.fetch_chats("u1", limit=2, cursor=cursor)

    assert [set(c.users) - {"u1"} for c in first + rest] == [{"u4"}, {"u3"}, {"u2"}]
    assert cursor is not None
    assert end is None
    with pytest.raises(ValidationException):
        await conversation_service.fetch_chats("u1", cursor="garbage")


@pytest.mark.asyncio
async def test_direct_chat_delete_requires_membership(conversation_service):
    direct, _ = await conversation_service.access_chat("u1", "u2")

    with pytest.raises(ForbiddenException):
        await conversation_service.delete_chat("u3", direct.id)

    await conversation_service.delete_chat("u2", direct.id)
    with pytest.raises(NotFoundException):
        await conversation_service.delete_chat("u2", direct.id)


@pytest.mark.asyncio
async def test_fetch_chats_lists_newest_first_with_preview(conversation_service, message_service):
    older, _ = await conversation_service.access_chat("u1", "u2")
    newer, _ = await conversation_service.access_chat("u1", "u3")
    await conversation_service.access_chat("u2", "u3")
    # stored timestamps keep millisecond precision
    await asyncio.sleep(0.01)
    await message_service.submit_message("u2", older.id, "bumped")

    chats, _ = await conversation_service.fetch_chats("u1")

    assert [c.id for c in chats] == [older.id, newer.id]
    assert chats[0].latest_message.content == "bumped"
    assert chats[0].latest_message.sender.id == "u2"
    assert chats[1].latest_message is None


def _drain(connection):
    return of_type(drain(connection), "message_received")
