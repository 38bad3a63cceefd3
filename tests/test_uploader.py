"""
Tests for mirroring artifacts.
"""

import tarfile

import pytest

from modelsync.errors import SelectorNotFound, TransportError
from modelsync.transfer.fetcher import PAYLOAD_FILES, BundleFetcher
from modelsync.transfer.outcome import OutcomeStatus
from modelsync.transfer.registry import RegistryClient
from modelsync.transfer.uploader import MirrorState, MirrorUploader


def make_uploader(client, local, mirror, transport, outgoing, verify=False):
    return MirrorUploader(
        client=client,
        local_url=local.url,
        mirror_url=mirror.url,
        fetcher=BundleFetcher(client, outgoing / "staging", outgoing),
        transport=transport,
        host="mirror.example.com",
        verify_remote_import=verify,
    )


class TestAlreadyMirrored:
    """Tests for artifacts the mirror already has."""

    @pytest.mark.asyncio
    async def test_no_fetch_no_transport(self, registry, transport, tmp_path):
        """An identifier already at the mirror costs zero fetch and transport calls."""
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")
            mirror.list("a1", "face")

            result = await make_uploader(client, local, mirror, transport, tmp_path / "out").upload("face")

        assert result.state == MirrorState.ALREADY_MIRRORED
        assert result.identifier == "a1"
        assert local.file_requests == []
        assert transport.calls == 0

        outcome = result.to_outcome()
        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.code == "ALREADY_PRESENT"


class TestUpload:
    """Tests for the upload lifecycle."""

    @pytest.mark.asyncio
    async def test_upload_lifecycle(self, registry, transport, tmp_path):
        """Test every state is visited in order and the bundle is sent whole."""
        outgoing = tmp_path / "out"
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")

            result = await make_uploader(client, local, mirror, transport, outgoing).upload("face")

        assert result.history == [
            MirrorState.UNMIRRORED,
            MirrorState.FETCHING,
            MirrorState.PACKAGED,
            MirrorState.TRANSMITTED,
            MirrorState.REMOTE_IMPORT_TRIGGERED,
        ]
        assert result.remote_path == "/remote/archives/a1.tar.gz"
        assert result.completed_at is not None
        assert transport.sent == [("a1.tar.gz", "mirror.example.com")]
        assert transport.triggers == ["mirror.example.com"]
        assert result.to_outcome().status == OutcomeStatus.SUCCESS

        sent = tmp_path / "sent.tar.gz"
        sent.write_bytes(transport.sent_bytes["a1.tar.gz"])
        with tarfile.open(sent, "r:gz") as tar:
            assert sorted(tar.getnames()) == sorted(f"a1/{n}" for n in PAYLOAD_FILES)

    @pytest.mark.asyncio
    async def test_bundle_removed(self, registry, transport, tmp_path):
        outgoing = tmp_path / "out"
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")
            await make_uploader(client, local, mirror, transport, outgoing).upload("a1")

        assert not (outgoing / "a1.tar.gz").exists()

    @pytest.mark.asyncio
    async def test_unknown_selector(self, registry, transport, tmp_path):
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")
            uploader = make_uploader(client, local, mirror, transport, tmp_path / "out")

            with pytest.raises(SelectorNotFound):
                await uploader.upload("ghost")

        assert transport.calls == 0

    @pytest.mark.asyncio
    async def test_ambiguous_name(self, registry, transport, tmp_path):
        """Duplicate names resolve to the first identifier in sorted order."""
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("c3", "face")
            local.add("a1", "face")

            result = await make_uploader(client, local, mirror, transport, tmp_path / "out").upload("face")

        assert result.identifier == "a1"


class TestTransportFailures:
    """Tests for failures of the remote side."""

    @pytest.mark.asyncio
    async def test_send_failure(self, registry, transport, tmp_path):
        """A failed send still removes the local bundle."""
        outgoing = tmp_path / "out"
        transport.send_error = TransportError("scp exited with 1", returncode=1)

        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")
            uploader = make_uploader(client, local, mirror, transport, outgoing)

            with pytest.raises(TransportError):
                await uploader.upload("face")

        assert not (outgoing / "a1.tar.gz").exists()
        assert transport.triggers == []

    @pytest.mark.asyncio
    async def test_trigger_failure(self, registry, transport, tmp_path):
        """A failed trigger leaves the remote import unknown."""
        transport.trigger_error = TransportError("ssh exited with 255", returncode=255)

        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")
            result = await make_uploader(client, local, mirror, transport, tmp_path / "out").upload("face")

        assert result.state == MirrorState.REMOTE_IMPORT_UNKNOWN
        assert "255" in result.reason

        outcome = result.to_outcome()
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.code == "REMOTE_IMPORT_UNKNOWN"


class TestVerification:
    """Tests for confirming the remote import."""

    @pytest.mark.asyncio
    async def test_confirmed(self, registry, transport, tmp_path):
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")
            transport.on_trigger = lambda: mirror.list("a1", "face")

            result = await make_uploader(
                client, local, mirror, transport, tmp_path / "out", verify=True
            ).upload("face")

        assert result.confirmed
        assert result.history[-2:] == [
            MirrorState.REMOTE_IMPORT_TRIGGERED,
            MirrorState.REMOTE_IMPORT_CONFIRMED,
        ]
        assert result.to_outcome().status == OutcomeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_not_listed(self, registry, transport, tmp_path):
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")

            result = await make_uploader(
                client, local, mirror, transport, tmp_path / "out", verify=True
            ).upload("face")

        assert result.state == MirrorState.REMOTE_IMPORT_UNKNOWN
        assert not result.confirmed

    @pytest.mark.asyncio
    async def test_mirror_unreachable_during_verify(self, registry, transport, tmp_path):
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")

            def break_mirror():
                mirror.listing_status = 502

            transport.on_trigger = break_mirror

            result = await make_uploader(
                client, local, mirror, transport, tmp_path / "out", verify=True
            ).upload("face")

        assert result.state == MirrorState.REMOTE_IMPORT_UNKNOWN
        assert "could not verify" in result.reason

    @pytest.mark.asyncio
    async def test_to_dict(self, registry, transport, tmp_path):
        async with registry("local") as local, registry("mirror") as mirror, RegistryClient() as client:
            local.add("a1", "face")
            result = await make_uploader(client, local, mirror, transport, tmp_path / "out").upload("face")

        data = result.to_dict()
        assert data["state"] == "remote_import_triggered"
        assert data["history"][0] == "unmirrored"
