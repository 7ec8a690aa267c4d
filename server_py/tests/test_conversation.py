import asyncio

import pytest

from dispatch_engine.core.errors import NotFoundError, ValidationError


async def test_concurrent_appends_get_gapless_sequence(core, place_order):
    order = await place_order()

    await asyncio.gather(
        *(core.conversation.append(order.id, "client-1", f"message {n}") for n in range(15))
    )

    messages = await core.conversation.list_messages(order.id)
    assert [m.seq for m in messages] == list(range(1, 16))


async def test_sequences_are_scoped_per_order(core, place_order):
    first = await place_order()
    second = await place_order()

    await core.conversation.append(first.id, "client-1", "hello")
    await core.conversation.append(first.id, "client-1", "anyone?")
    message = await core.conversation.append(second.id, "client-1", "hi")

    assert message.seq == 1


async def test_history_since_seq_and_restart(core, place_order):
    order = await place_order()
    for n in range(7):
        await core.conversation.append(order.id, "client-1", f"m{n}")

    tail = [m.seq async for m in core.conversation.history(order.id, since_seq=4, page_size=2)]
    assert tail == [5, 6, 7]

    # A second iteration starts over and pages lazily
    everything = [m.content async for m in core.conversation.history(order.id, page_size=3)]
    assert everything == [f"m{n}" for n in range(7)]

    assert await core.conversation.list_messages(order.id, since_seq=7) == []


async def test_append_publishes_to_room(core, place_order, recorder):
    order = await place_order()
    listener = recorder()
    await core.hub.subscribe(order.id, "conn-1", "client", listener, announce=False)

    message = await core.conversation.append(
        order.id, "client-1", "Please call me", attachments=["https://cdn.example/p.jpg"]
    )

    events = listener.of_type("message")
    assert len(events) == 1
    assert events[0]["data"]["seq"] == message.seq
    assert events[0]["data"]["attachments"] == ["https://cdn.example/p.jpg"]


async def test_recipient_defaults_to_other_party(core, place_order, online_driver):
    await online_driver("d1")
    order = await place_order()
    await core.lifecycle.accept_order(order.id, "d1")

    from_client = await core.conversation.append(order.id, "client-1", "Where are you?")
    from_driver = await core.conversation.append(order.id, "d1", "Two minutes away")
    explicit = await core.conversation.append(order.id, "op-1", "Support here", recipient_id="client-1")

    assert from_client.recipient_id == "d1"
    assert from_driver.recipient_id == "client-1"
    assert explicit.recipient_id == "client-1"


async def test_append_validation(core, place_order):
    order = await place_order()

    with pytest.raises(ValidationError):
        await core.conversation.append(order.id, "client-1", "   ")
    with pytest.raises(ValidationError):
        await core.conversation.append(order.id, "client-1", "x" * 5000)
    with pytest.raises(ValidationError):
        await core.conversation.append(order.id, "client-1", "hi", message_type="video")
    with pytest.raises(NotFoundError):
        await core.conversation.append("missing-order", "client-1", "hi")

    # Attachment-only messages are allowed
    message = await core.conversation.append(
        order.id, "client-1", "", message_type="image", attachments=["https://cdn.example/a.png"]
    )
    assert message.message_type == "image"


async def test_message_reaches_recipient_outside_the_room(core, place_order, recorder):
    order = await place_order()
    in_room, elsewhere, bystander = recorder(), recorder(), recorder()
    await core.hub.subscribe(order.id, "client-room", "client", in_room, announce=False)
    await core.hub.register_actor("client-1", "client", "client-room", in_room)
    await core.hub.register_actor("client-1", "client", "client-phone", elsewhere)
    await core.hub.register_actor("client-2", "client", "other", bystander)

    message = await core.conversation.append(order.id, "op-1", "Support here", recipient_id="client-1")

    # Once through the room, once on the connection that has not joined it
    assert [e["data"]["seq"] for e in in_room.of_type("message")] == [message.seq]
    direct = elsewhere.of_type("message")
    assert len(direct) == 1
    assert direct[0]["orderId"] == order.id
    assert direct[0]["data"]["recipientId"] == "client-1"
    assert bystander.events == []
