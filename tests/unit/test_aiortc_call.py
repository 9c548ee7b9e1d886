"""End-to-end call between two controllers over real aiortc connections."""
import pytest
from aioice.ice import get_host_addresses

from peerlink.services.call_session.context import CallContext
from peerlink.services.call_session.controller import CallSessionController
from peerlink.services.call_session.media import SyntheticMediaDevices
from peerlink.services.call_session.models import CallRole, ConnectionState, MediaKind

from tests.fakes import wait_for


pytestmark = pytest.mark.skipif(
    not get_host_addresses(use_ipv4=True, use_ipv6=False),
    reason="no IPv4 host address for ICE",
)


@pytest.fixture
def local_settings(test_settings):
    test_settings.ice_server_urls = []
    return test_settings


def _controller(test_store, settings, user_id, peer_id):
    context = CallContext(
        store=test_store,
        media=SyntheticMediaDevices(),
        user_id=user_id,
        settings=settings,
    )
    return CallSessionController(context, MediaKind.AUDIO_VIDEO, peer_id=peer_id)


@pytest.mark.asyncio
async def test_video_call_over_loopback(test_store, local_settings):
    """Test that two participants connect and receive each other's media."""
    alice = _controller(test_store, local_settings, "alice", "bob")
    bob = _controller(test_store, local_settings, "bob", "alice")

    try:
        await bob.start("loopback", CallRole.RECEIVER)
        await alice.start("loopback", CallRole.INITIATOR)
        await wait_for(
            lambda: alice.state == ConnectionState.CONNECTED and bob.state == ConnectionState.CONNECTED,
            timeout=20,
        )

        await wait_for(lambda: len(alice.remote_tracks) == 2 and len(bob.remote_tracks) == 2)
        assert sorted(t.kind for t in bob.remote_tracks) == ["audio", "video"]
        frame = await bob.remote_tracks[0].recv()
        assert frame is not None
    finally:
        await alice.end()
        await bob.end()

    assert alice.state == ConnectionState.CLOSED
    assert bob.state == ConnectionState.CLOSED
    logs = await test_store.query("call_logs", {"call_id": "loopback"})
    assert logs[0]["status"] == "completed"
