from __future__ import annotations

import asyncio
import json
import logging

import pytest

from roomrelay.messages import Answer
from roomrelay.messages import AnswerRequest
from roomrelay.messages import encode_message
from roomrelay.messages import IceCandidate
from roomrelay.messages import IceCandidateRequest
from roomrelay.messages import JoinRoomRequest
from roomrelay.messages import LeaveRoomRequest
from roomrelay.messages import Offer
from roomrelay.messages import OfferRequest
from roomrelay.messages import PingRequest
from roomrelay.messages import Pong
from roomrelay.messages import RoomErrorMessage
from roomrelay.messages import RoomJoined
from roomrelay.messages import UserDisconnected
from roomrelay.messages import UserJoined
from roomrelay.messages import UserLeft
from roomrelay.messages import UserStatusChanged
from roomrelay.messages import UserStatusRequest
from roomrelay.server import SignalingServer
from testing.connection import MockConnection


async def join(
    server: SignalingServer,
    connection: MockConnection,
    room_id: str,
    user_id: str,
    user_name: str | None = None,
    user_avatar: str | None = None,
) -> bool:
    request = JoinRoomRequest(room_id, user_id, user_name, user_avatar)
    return await server.join(connection, request)


async def settle() -> None:
    # Yield control of event loop to allow handlers to process messages
    for _ in range(5):
        await asyncio.sleep(0)


def push(connection: MockConnection, event: str, **data: object) -> None:
    connection.push(json.dumps({'event': event, 'data': data}))


@pytest.mark.asyncio()
async def test_server_send() -> None:
    server = SignalingServer()
    connection = MockConnection()

    assert await server.send(connection, Pong())
    assert isinstance(connection.last(), Pong)


@pytest.mark.asyncio()
async def test_server_send_encoding_error(caplog) -> None:
    caplog.set_level(logging.ERROR)
    server = SignalingServer()
    connection = MockConnection()
    message = Offer(sender_id='u1', sender_name=None, sdp=object())

    assert not await server.send(connection, message)
    assert len(connection.sent) == 0
    assert len(caplog.records) == 1
    assert 'Failed to encode message' in caplog.records[0].message


@pytest.mark.asyncio()
async def test_server_send_connection_closed(caplog) -> None:
    caplog.set_level(logging.WARNING)
    server = SignalingServer()
    connection = MockConnection()
    await connection.close()

    assert not await server.send(connection, Pong())
    assert len(caplog.records) == 1
    assert 'Connection closed while' in caplog.records[0].message


@pytest.mark.asyncio()
async def test_join_first_participant() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1', 'video')
    connection = MockConnection()

    assert await join(server, connection, room.id, 'u1', 'Alice', 'a')

    assert room.participants == ['u1']
    assert server.connection_manager.resolve('u1') is connection
    assert len(connection.sent) == 1
    message = connection.last()
    assert isinstance(message, RoomJoined)
    assert message.room_id == room.id
    assert message.type == 'video'
    assert message.is_creator
    assert [p.id for p in message.participants] == ['u1']
    assert message.participants[0].name == 'Alice'
    assert message.participants[0].avatar == 'a'


@pytest.mark.asyncio()
async def test_join_notifies_other_members() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()

    await join(server, alice, room.id, 'u1', 'Alice', 'a')
    await join(server, bob, room.id, 'u2', 'Bob', 'b')

    message = alice.last()
    assert message == UserJoined(
        user_id='u2',
        user_name='Bob',
        user_avatar='b',
        participants_count=2,
    )

    # The joiner does not receive its own user-joined message
    assert len(bob.sent) == 1
    joined = bob.last()
    assert isinstance(joined, RoomJoined)
    assert not joined.is_creator
    assert [(p.id, p.name) for p in joined.participants] == [
        ('u1', 'Alice'),
        ('u2', 'Bob'),
    ]


@pytest.mark.asyncio()
async def test_join_roster_unbound_participant() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    server.registry.add_participant(room.id, 'ghost')
    connection = MockConnection()

    await join(server, connection, room.id, 'u1')

    message = connection.last()
    assert isinstance(message, RoomJoined)
    assert message.participants[0].id == 'ghost'
    assert message.participants[0].name == 'Participant'
    assert message.participants[0].avatar == '\U0001f464'


@pytest.mark.asyncio()
async def test_join_unknown_room() -> None:
    server = SignalingServer()
    connection = MockConnection()

    assert not await join(server, connection, 'missing', 'u1')

    message = connection.last()
    assert isinstance(message, RoomErrorMessage)
    assert 'does not exist' in message.message
    assert server.connection_manager.resolve('u1') is None
    assert len(server.registry) == 0


@pytest.mark.asyncio()
async def test_join_full_room() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u0')
    members = [MockConnection() for _ in range(4)]
    for i, connection in enumerate(members):
        assert await join(server, connection, room.id, f'u{i}')

    sent_before = [len(connection.sent) for connection in members]
    late = MockConnection()
    assert not await join(server, late, room.id, 'u4')

    message = late.last()
    assert isinstance(message, RoomErrorMessage)
    assert 'full' in message.message
    assert room.participants == ['u0', 'u1', 'u2', 'u3']
    assert server.connection_manager.resolve('u4') is None
    assert server.connection_manager.get_binding_by_connection(late) is None
    # Nobody in the room is notified of a rejected join
    assert [len(c.sent) for c in members] == sent_before


@pytest.mark.asyncio()
async def test_room_never_exceeds_capacity() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u0')
    connections = [MockConnection() for _ in range(10)]

    results = [
        await join(server, connection, room.id, f'u{i}')
        for i, connection in enumerate(connections)
    ]

    assert results == [True] * 4 + [False] * 6
    assert len(room.participants) == 4


@pytest.mark.asyncio()
async def test_leave_notifies_remaining_members() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1', 'Alice')
    await join(server, bob, room.id, 'u2', 'Bob')

    await server.leave(bob)

    assert alice.last() == UserLeft(
        user_id='u2',
        user_name='Bob',
        participants_count=1,
    )
    assert room.participants == ['u1']
    assert server.connection_manager.resolve('u2') is None
    assert server.connection_manager.get_binding_by_connection(bob) is None


@pytest.mark.asyncio()
async def test_leave_is_idempotent() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1')
    await join(server, bob, room.id, 'u2')

    await server.leave(bob)
    sent = len(alice.sent)
    await server.leave(bob)
    await server.leave(MockConnection())

    assert len(alice.sent) == sent
    assert room.participants == ['u1']


@pytest.mark.asyncio()
async def test_last_leave_deletes_room() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1')
    await join(server, bob, room.id, 'u2')

    await server.leave(alice)
    await server.disconnect(bob)

    assert server.registry.get_room(room.id) is None
    assert len(server.connection_manager.get_bindings()) == 0


@pytest.mark.asyncio()
async def test_disconnect_notifies_remaining_members() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1', 'Alice')
    await join(server, bob, room.id, 'u2', 'Bob')

    await server.disconnect(alice)

    assert bob.last() == UserDisconnected(
        user_id='u1',
        user_name='Alice',
        reason='disconnected',
    )
    assert room.participants == ['u2']
    assert server.registry.get_room(room.id) is room


@pytest.mark.asyncio()
async def test_disconnect_unjoined_connection() -> None:
    server = SignalingServer()
    await server.disconnect(MockConnection())
    assert len(server.connection_manager.get_bindings()) == 0


@pytest.mark.asyncio()
async def test_relay_offer_to_target_only() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob, carol = MockConnection(), MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1', 'Alice')
    await join(server, bob, room.id, 'u2', 'Bob')
    await join(server, carol, room.id, 'u3', 'Carol')
    sent = (len(alice.sent), len(bob.sent), len(carol.sent))

    sdp = {'type': 'offer', 'sdp': 'v=0\r\ns=-\r\n'}
    request = OfferRequest(target_user_id='u1', sdp=sdp, type='video')
    assert await server.relay(bob, request)

    assert len(alice.sent) == sent[0] + 1
    assert len(bob.sent) == sent[1]
    assert len(carol.sent) == sent[2]
    message = alice.last()
    assert isinstance(message, Offer)
    assert message.sender_id == 'u2'
    assert message.sender_name == 'Bob'
    assert message.sdp == sdp
    assert message.type == 'video'


@pytest.mark.asyncio()
async def test_relay_answer_and_ice_candidate() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1')
    await join(server, bob, room.id, 'u2')

    candidate = {'candidate': 'candidate:1', 'sdpMid': '0'}
    assert await server.relay(alice, AnswerRequest('u2', 'A'))
    assert await server.relay(alice, IceCandidateRequest('u2', candidate))

    answer, ice = bob.messages()[-2:]
    assert isinstance(answer, Answer)
    assert answer.sender_id == 'u1'
    assert answer.sdp == 'A'
    assert isinstance(ice, IceCandidate)
    assert ice.sender_id == 'u1'
    assert ice.candidate == candidate


@pytest.mark.asyncio()
async def test_relay_preserves_order_between_peers() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1')
    await join(server, bob, room.id, 'u2')
    start = len(bob.sent)

    for i in range(10):
        await server.relay(alice, IceCandidateRequest('u2', i))

    candidates = [m.candidate for m in bob.messages()[start:]]
    assert candidates == list(range(10))


@pytest.mark.asyncio()
async def test_relay_to_unknown_target_is_silent() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice = MockConnection()
    await join(server, alice, room.id, 'u1')
    sent = len(alice.sent)

    assert not await server.relay(alice, OfferRequest('missing', 'S'))
    assert len(alice.sent) == sent


@pytest.mark.asyncio()
async def test_relay_from_unjoined_connection_is_dropped(caplog) -> None:
    caplog.set_level(logging.WARNING)
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, stranger = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1')
    sent = len(alice.sent)

    assert not await server.relay(stranger, OfferRequest('u1', 'S'))
    assert len(alice.sent) == sent
    assert len(stranger.sent) == 0
    assert any(
        ['without joining a room' in record.message for record in caplog.records],
    )


@pytest.mark.asyncio()
async def test_relay_after_target_left() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1')
    await join(server, bob, room.id, 'u2')
    await server.leave(bob)
    sent = len(bob.sent)

    assert not await server.relay(alice, OfferRequest('u2', 'S'))
    assert len(bob.sent) == sent


@pytest.mark.asyncio()
async def test_update_status_broadcast_to_others() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob, carol = MockConnection(), MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1')
    await join(server, bob, room.id, 'u2')
    await join(server, carol, room.id, 'u3')
    sent = len(alice.sent)

    request = UserStatusRequest(is_muted=True, is_video_on=False)
    await server.update_status(alice, request)

    assert len(alice.sent) == sent
    for connection in (bob, carol):
        message = connection.last()
        assert isinstance(message, UserStatusChanged)
        assert message.user_id == 'u1'
        assert message.is_muted is True
        assert message.is_video_on is False
    assert room.participants == ['u1', 'u2', 'u3']


@pytest.mark.asyncio()
async def test_update_status_unjoined_connection() -> None:
    server = SignalingServer()
    connection = MockConnection()
    await server.update_status(connection, UserStatusRequest(True, True))
    assert len(connection.sent) == 0


@pytest.mark.asyncio()
async def test_ping() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1')
    await join(server, bob, room.id, 'u2')
    sent = len(alice.sent)

    await server.ping(bob)

    assert isinstance(bob.last(), Pong)
    assert len(alice.sent) == sent


@pytest.mark.asyncio()
async def test_rejoin_from_new_connection_supersedes_binding() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, room.id, 'u1', 'Alice')
    await join(server, bob, room.id, 'u2', 'Bob')

    # Alice reconnects on a new connection without closing the old one
    alice_new = MockConnection()
    assert await join(server, alice_new, room.id, 'u1', 'Alice')
    assert server.connection_manager.resolve('u1') is alice_new
    assert room.participants == ['u1', 'u2']
    assert bob.last() == UserJoined('u1', 'Alice', None, 2)

    # Relayed messages go to the newer connection only
    sent_old = len(alice.sent)
    await server.relay(bob, OfferRequest('u1', 'S'))
    assert len(alice.sent) == sent_old
    assert isinstance(alice_new.last(), Offer)

    # Losing the superseded connection keeps the membership and is silent
    sent_bob = len(bob.sent)
    await server.disconnect(alice)
    assert room.participants == ['u1', 'u2']
    assert server.connection_manager.resolve('u1') is alice_new
    assert len(bob.sent) == sent_bob


@pytest.mark.asyncio()
async def test_join_other_room_leaves_previous_room() -> None:
    server = SignalingServer()
    first = server.registry.create_room('u1')
    second = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, first.id, 'u1', 'Alice')
    await join(server, bob, first.id, 'u2', 'Bob')

    assert await join(server, alice, second.id, 'u1', 'Alice')

    assert first.participants == ['u2']
    assert second.participants == ['u1']
    assert bob.last() == UserLeft('u1', 'Alice', 1)
    binding = server.connection_manager.get_binding('u1')
    assert binding is not None
    assert binding.room_id == second.id


@pytest.mark.asyncio()
async def test_failed_join_keeps_previous_room() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice = MockConnection()
    await join(server, alice, room.id, 'u1')

    assert not await join(server, alice, 'missing', 'u1')

    assert room.participants == ['u1']
    binding = server.connection_manager.get_binding('u1')
    assert binding is not None
    assert binding.room_id == room.id


@pytest.mark.asyncio()
async def test_rejoin_full_room_as_new_identity_rejected() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u0')
    connections = [MockConnection() for _ in range(4)]
    for i, connection in enumerate(connections):
        assert await join(server, connection, room.id, f'u{i}')

    # Admission of the new ID is checked before the old ID is released
    assert not await join(server, connections[0], room.id, 'u4')

    assert isinstance(connections[0].last(), RoomErrorMessage)
    assert room.participants == ['u0', 'u1', 'u2', 'u3']
    binding = server.connection_manager.get_binding('u0')
    assert binding is not None
    assert binding.connection is connections[0]


@pytest.mark.asyncio()
async def test_join_other_room_from_new_connection() -> None:
    server = SignalingServer()
    first = server.registry.create_room('u1')
    second = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, alice, first.id, 'u1', 'Alice')
    await join(server, bob, first.id, 'u2', 'Bob')

    alice_new = MockConnection()
    assert await join(server, alice_new, second.id, 'u1', 'Alice')

    assert first.participants == ['u2']
    assert second.participants == ['u1']
    assert bob.last() == UserLeft('u1', 'Alice', 1)
    assert server.connection_manager.get_binding_by_connection(alice) is None


@pytest.mark.asyncio()
async def test_end_to_end_scenario() -> None:
    server = SignalingServer()
    room_id = server.registry.create_room('u1', 'video').id
    alice, bob = MockConnection(), MockConnection()

    await join(server, alice, room_id, 'u1', 'Alice', '\U0001f642')
    joined = alice.last()
    assert isinstance(joined, RoomJoined)
    assert joined.room_id == room_id
    assert [p.id for p in joined.participants] == ['u1']
    assert joined.is_creator

    await join(server, bob, room_id, 'u2', 'Bob', '\U0001f916')
    user_joined = alice.last()
    assert isinstance(user_joined, UserJoined)
    assert user_joined.user_id == 'u2'
    assert user_joined.participants_count == 2

    await server.relay(bob, OfferRequest(target_user_id='u1', sdp='S'))
    offer = alice.last()
    assert isinstance(offer, Offer)
    assert offer.sender_id == 'u2'
    assert offer.sdp == 'S'

    await server.disconnect(alice)
    disconnected = bob.last()
    assert isinstance(disconnected, UserDisconnected)
    assert disconnected.user_id == 'u1'
    assert disconnected.reason == 'disconnected'
    room = server.registry.get_room(room_id)
    assert room is not None
    assert room.participants == ['u2']

    await server.leave(bob)
    assert server.registry.get_room(room_id) is None


@pytest.mark.asyncio()
async def test_process_message_dispatch() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    connection = MockConnection()

    await server._process_message(connection, JoinRoomRequest(room.id, 'u1'))
    await server._process_message(connection, PingRequest())
    await server._process_message(connection, LeaveRoomRequest())

    assert isinstance(connection.messages()[0], RoomJoined)
    assert isinstance(connection.messages()[1], Pong)
    assert server.registry.get_room(room.id) is None

    with pytest.raises(AssertionError, match='Unreachable'):
        await server._process_message(connection, object())  # type: ignore[arg-type]


@pytest.mark.asyncio()
async def test_handler_processes_messages_then_disconnects() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()

    alice_task = asyncio.create_task(server.handler(alice))
    bob_task = asyncio.create_task(server.handler(bob))

    push(alice, 'join-room', roomId=room.id, userId='u1', userName='Alice')
    await settle()
    push(bob, 'join-room', roomId=room.id, userId='u2', userName='Bob')
    await settle()
    push(bob, 'offer', targetUserId='u1', sdp='S', type='video')
    push(bob, 'ping')
    await settle()

    assert isinstance(alice.messages()[-1], Offer)
    assert isinstance(bob.messages()[-1], Pong)

    alice.push_close()
    await asyncio.wait_for(alice_task, 1)

    assert isinstance(bob.last(), UserDisconnected)
    assert room.participants == ['u2']

    push(bob, 'leave-room')
    bob.push_close()
    await asyncio.wait_for(bob_task, 1)

    assert server.registry.get_room(room.id) is None
    assert len(server.connection_manager.get_bindings()) == 0


@pytest.mark.asyncio()
async def test_handler_cancelled_disconnects_client() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()
    await join(server, bob, room.id, 'u2')

    task = asyncio.create_task(server.handler(alice))
    push(alice, 'join-room', roomId=room.id, userId='u1')
    await settle()
    assert room.participants == ['u2', 'u1']

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert room.participants == ['u2']
    assert isinstance(bob.last(), UserDisconnected)


@pytest.mark.parametrize(
    'message',
    (b'{"event": "ping"}', 'not json', '{"event": "unknown"}'),
)
@pytest.mark.asyncio()
async def test_handler_bad_message_closes_connection(
    message: str | bytes,
) -> None:
    server = SignalingServer()
    connection = MockConnection()
    connection.push(message)

    await asyncio.wait_for(server.handler(connection), 1)

    assert connection.closed
    assert connection.close_code == 4000
    assert connection.close_reason == 'Unknown message type.'


@pytest.mark.asyncio()
async def test_handler_relays_offer_with_extra_fields() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    alice, bob = MockConnection(), MockConnection()

    alice_task = asyncio.create_task(server.handler(alice))
    bob_task = asyncio.create_task(server.handler(bob))

    push(alice, 'join-room', roomId=room.id, userId='u1')
    await settle()
    push(bob, 'join-room', roomId=room.id, userId='u2')
    await settle()
    push(
        bob,
        'offer',
        targetUserId='u1',
        sdp='S',
        type='video',
        roomId=room.id,
    )
    await settle()

    assert not bob.closed
    offer = alice.last()
    assert isinstance(offer, Offer)
    assert offer.sender_id == 'u2'
    assert offer.sdp == 'S'
    assert room.participants == ['u1', 'u2']

    alice.push_close()
    bob.push_close()
    await asyncio.wait_for(asyncio.gather(alice_task, bob_task), 1)


@pytest.mark.asyncio()
async def test_handler_bad_message_after_join_removes_client() -> None:
    server = SignalingServer()
    room = server.registry.create_room('u1')
    connection = MockConnection()
    push(connection, 'join-room', roomId=room.id, userId='u1')
    connection.push('{"event": "join-room", "data": {"roomId": 1}}')

    await asyncio.wait_for(server.handler(connection), 1)

    assert connection.close_code == 4000
    assert server.registry.get_room(room.id) is None


@pytest.mark.asyncio()
async def test_handler_message_size_exceeded() -> None:
    max_size = 1000
    server = SignalingServer(max_message_bytes=max_size)
    connection = MockConnection()
    connection.push(
        encode_message(Offer(sender_id='u1', sender_name=None, sdp='.' * max_size)),
    )

    await asyncio.wait_for(server.handler(connection), 1)

    assert connection.close_code == 4003
    assert connection.close_reason == 'Message length exceeds limit.'
