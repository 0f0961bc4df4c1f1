"""Multi-node behaviour over an in-memory broker."""

import pytest

from conftest import FakeRedis, wait_until

from chat_relay.config import RelayConfig
from chat_relay.node import RelayNode
from chat_relay.presence import PresenceDirectory


@pytest.fixture
def nodes(hub):
    started = []

    def make(origin_id, **kwargs):
        config = RelayConfig(
            origin_id=origin_id,
            backoff_base=0.01,
            backoff_cap=0.05,
            backoff_jitter=0.0,
            drain_timeout=1.0,
        )
        node = RelayNode(config, broker=hub.connection(), **kwargs)
        node.start()
        assert node.session.wait_connected(5)
        started.append(node)
        return node

    yield make
    for node in started:
        node.stop()


def test_reconnecting_origin_sees_buffered_peer_message_and_no_duplicate(nodes, recorder_factory, alice, bob):
    svr_a = nodes("svr-a")
    svr_b = nodes("svr-b")
    seen_a = recorder_factory()
    seen_b = recorder_factory()
    svr_a.engine.register_consumer(seen_a)
    svr_b.engine.register_consumer(seen_b)

    hello = svr_a.engine.notify_chat_sent(alice, "global", "hello")
    assert hello.sequence == 1
    # loop-back is immediate
    assert seen_a.texts == ["hello"]
    assert wait_until(lambda: seen_b.texts == ["hello"])

    svr_a.broker.drop()
    svr_b.broker.drop()
    assert wait_until(lambda: not svr_a.connected and not svr_b.connected)

    hi = svr_b.engine.notify_chat_sent(bob, "global", "hi")
    assert hi.sequence == 1

    svr_a.broker.restore()
    assert svr_a.session.wait_connected(5)
    svr_b.broker.restore()
    assert svr_b.session.wait_connected(5)

    assert wait_until(lambda: "hi" in seen_a.texts)
    assert seen_a.texts == ["hello", "hi"]
    assert seen_b.texts == ["hello", "hi"]


def test_vanished_sender_is_suppressed_on_remote_nodes(nodes, recorder_factory, alice):
    svr_a = nodes("svr-a")
    svr_b = nodes("svr-b")
    ordinary = recorder_factory()
    privileged = recorder_factory()
    svr_b.engine.register_consumer(ordinary)
    svr_b.engine.register_consumer(privileged, privileged=True)

    svr_a.engine.notify_vanish_changed(alice, True)
    assert wait_until(lambda: len(privileged.calls) == 1)
    svr_a.engine.notify_chat_sent(alice, "global", "psst")

    assert wait_until(lambda: len(ordinary.calls) == 1 and len(privileged.calls) == 2)
    chat_for_ordinary, suppressed_ordinary = ordinary.calls[0]
    chat_for_privileged, suppressed_privileged = privileged.calls[1]
    assert chat_for_ordinary is chat_for_privileged
    assert suppressed_ordinary is True
    assert suppressed_privileged is False


def test_peers_receive_each_origin_in_order(nodes, recorder_factory, alice, bob):
    svr_a = nodes("svr-a")
    svr_b = nodes("svr-b")
    svr_c = nodes("svr-c")
    seen_c = recorder_factory()
    svr_c.engine.register_consumer(seen_c)

    for i in range(10):
        svr_a.engine.notify_chat_sent(alice, "global", f"a{i}")
        svr_b.engine.notify_chat_sent(bob, "global", f"b{i}")

    assert wait_until(lambda: len(seen_c.calls) == 20)
    from_a = [e.sequence for e, _ in seen_c.calls if e.origin_id == "svr-a"]
    from_b = [e.sequence for e, _ in seen_c.calls if e.origin_id == "svr-b"]
    assert from_a == list(range(1, 11))
    assert from_b == list(range(1, 11))


def test_private_message_crosses_servers(nodes, alice, bob):
    lobby = nodes("lobby", is_local_player=lambda name: alice.player_id if name.lower() == "alice" else None)
    survival = nodes("survival", is_local_player=lambda name: bob.player_id if name.lower() == "bob" else None)

    lobby.messenger.send(alice, "Bob", "see you in survival")

    assert wait_until(lambda: survival.messenger.reply_target(bob.player_id) is not None)
    assert survival.messenger.reply_target(bob.player_id).name == "Alice"
    assert lobby.messenger.last_target(alice.player_id).player_id is None
    # presence directory is only wired for Redis brokers
    assert lobby.is_online_anywhere("Bob") is False


def test_quit_during_outage_is_removed_from_presence_on_reconnect(hub, nodes, alice, bob):
    redis = FakeRedis()
    players = [alice, bob]
    node = nodes(
        "lobby",
        local_players=lambda: list(players),
        presence=PresenceDirectory("lobby", client=lambda: redis),
    )
    key = "archivechat:online:lobby"
    assert wait_until(lambda: redis.sets.get(key) == {"alice", "bob"})

    node.broker.drop()
    assert wait_until(lambda: not node.connected)
    players.remove(bob)
    node.engine.notify_presence(bob, joined=False)
    node.broker.restore()
    assert node.session.wait_connected(5)

    assert wait_until(lambda: redis.sets.get(key) == {"alice"})


def test_remote_vanish_state_is_forgotten_after_outage(nodes, recorder_factory, alice):
    svr_a = nodes("svr-a")
    svr_b = nodes("svr-b")
    svr_a.engine.notify_vanish_changed(alice, True)
    assert wait_until(lambda: svr_b.vanish_directory.is_vanished(alice.player_id, "svr-a"))

    svr_b.broker.drop()
    assert wait_until(lambda: not svr_b.connected)
    # the un-vanish is published while svr-b cannot hear it
    svr_a.engine.notify_vanish_changed(alice, False)
    svr_b.broker.restore()
    assert svr_b.session.wait_connected(5)

    assert wait_until(lambda: not svr_b.vanish_directory.is_vanished(alice.player_id, "svr-a"))
