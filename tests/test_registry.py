"""
Tests for the registry client.
"""

import aiohttp
import pytest
from pydantic import ValidationError

from conftest import payload_bytes
from modelsync.errors import RegistryUnreachable
from modelsync.transfer.registry import ArtifactRecord, RegistryClient, RegistryListing


class TestArtifactRecord:
    """Tests for listing records."""

    def test_parse_wire_record(self):
        """uuid maps to identifier, unknown keys are ignored."""
        record = ArtifactRecord.model_validate({"uuid": "a1", "name": "face", "size": 12})

        assert record.identifier == "a1"
        assert record.name == "face"

    def test_name_optional(self):
        record = ArtifactRecord.model_validate({"uuid": "a1"})
        assert record.name is None

    def test_numeric_name(self):
        """Numeric labels are read as text."""
        record = ArtifactRecord.model_validate({"uuid": "a1", "name": 42})
        assert record.name == "42"

    def test_identifier_required(self):
        with pytest.raises(ValidationError):
            ArtifactRecord.model_validate({"name": "face"})

    def test_hashable(self):
        """Equal records collapse in a set."""
        records = {
            ArtifactRecord(identifier="a1", name="face"),
            ArtifactRecord(identifier="a1", name="face"),
            ArtifactRecord(identifier="b2", name="face"),
        }
        assert len(records) == 2

    def test_listing(self):
        listing = RegistryListing.model_validate({"data": [{"uuid": "a1"}, {"uuid": "b2", "name": "x"}]})
        assert [r.identifier for r in listing.data] == ["a1", "b2"]


class TestListing:
    """Tests for reading registry listings."""

    @pytest.mark.asyncio
    async def test_list_artifacts(self, registry):
        """Test listing returns every record."""
        async with registry() as reg, RegistryClient() as client:
            reg.list("a1", "face")
            reg.list("b2")

            records = await client.list_artifacts(reg.url)

        assert records == {
            ArtifactRecord(identifier="a1", name="face"),
            ArtifactRecord(identifier="b2"),
        }

    @pytest.mark.asyncio
    async def test_empty_listing(self, registry):
        async with registry() as reg, RegistryClient() as client:
            assert await client.list_artifacts(reg.url) == set()

    @pytest.mark.asyncio
    async def test_trailing_slash(self, registry):
        async with registry() as reg, RegistryClient() as client:
            reg.list("a1")
            assert await client.known_identifiers(reg.url + "/") == {"a1"}

    @pytest.mark.asyncio
    async def test_error_status(self, registry):
        """A non-200 listing is fatal."""
        async with registry() as reg, RegistryClient() as client:
            reg.listing_status = 503
            with pytest.raises(RegistryUnreachable) as exc_info:
                await client.list_artifacts(reg.url)

        assert "503" in str(exc_info.value)
        assert exc_info.value.code == "REGISTRY_UNREACHABLE"

    @pytest.mark.asyncio
    async def test_unparseable_listing(self, registry):
        async with registry() as reg, RegistryClient() as client:
            reg.listing_body = "<html>not json</html>"
            with pytest.raises(RegistryUnreachable):
                await client.list_artifacts(reg.url)

    @pytest.mark.asyncio
    async def test_malformed_listing(self, registry):
        """Records without a uuid make the listing unusable."""
        async with registry() as reg, RegistryClient() as client:
            reg.listing_body = '{"data": [{"name": "face"}]}'
            with pytest.raises(RegistryUnreachable):
                await client.list_artifacts(reg.url)

    @pytest.mark.asyncio
    async def test_numeric_name_listing(self, registry):
        """One record with a numeric name leaves the listing usable."""
        async with registry() as reg, RegistryClient() as client:
            reg.listing_body = '{"data": [{"uuid": "a1", "name": 7}, {"uuid": "b2", "name": "face"}]}'
            records = await client.list_artifacts(reg.url)
            assert await client.find(reg.url, "7") == {"a1"}

        assert sorted((r.identifier, r.name) for r in records) == [("a1", "7"), ("b2", "face")]

    @pytest.mark.asyncio
    async def test_connection_refused(self, registry):
        async with registry() as reg:
            url = reg.url

        async with RegistryClient(timeout=5) as client:
            with pytest.raises(RegistryUnreachable):
                await client.list_artifacts(url)

    @pytest.mark.asyncio
    async def test_bearer_token(self, registry):
        async with registry() as reg, RegistryClient(api_key="secret") as client:
            await client.list_artifacts(reg.url)

        assert reg.headers[0]["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_no_token_by_default(self, registry):
        async with registry() as reg, RegistryClient() as client:
            await client.list_artifacts(reg.url)

        assert "Authorization" not in reg.headers[0]


class TestFind:
    """Tests for selector resolution."""

    @pytest.mark.asyncio
    async def test_by_name(self, registry):
        async with registry() as reg, RegistryClient() as client:
            reg.list("a1", "face")
            reg.list("b2", "hand")
            assert await client.find(reg.url, "face") == {"a1"}

    @pytest.mark.asyncio
    async def test_by_identifier(self, registry):
        async with registry() as reg, RegistryClient() as client:
            reg.list("a1", "face")
            assert await client.find(reg.url, "a1") == {"a1"}

    @pytest.mark.asyncio
    async def test_duplicate_names(self, registry):
        """Names are not unique, every match is returned."""
        async with registry() as reg, RegistryClient() as client:
            reg.list("a1", "face")
            reg.list("c3", "face")
            assert await client.find(reg.url, "face") == {"a1", "c3"}

    @pytest.mark.asyncio
    async def test_name_wins_over_identifier(self, registry):
        async with registry() as reg, RegistryClient() as client:
            reg.list("face", "other")
            reg.list("a1", "face")
            assert await client.find(reg.url, "face") == {"a1"}

    @pytest.mark.asyncio
    async def test_no_match(self, registry):
        async with registry() as reg, RegistryClient() as client:
            reg.list("a1", "face")
            assert await client.find(reg.url, "ghost") == set()


class TestDownloadFile:
    """Tests for payload file retrieval."""

    @pytest.mark.asyncio
    async def test_full_download(self, registry, tmp_path):
        dest = tmp_path / "model.json"
        async with registry() as reg, RegistryClient(chunk_size=1024) as client:
            reg.add("a1")
            size = await client.download_file(reg.url, "a1", "model.json", dest)

        expected = payload_bytes("a1", "model.json")
        assert dest.read_bytes() == expected
        assert size == len(expected)
        assert "Range" not in reg.headers[-1]

    @pytest.mark.asyncio
    async def test_resume(self, registry, tmp_path):
        """A partial file is continued with a byte range."""
        expected = payload_bytes("a1", "model.data")
        dest = tmp_path / "model.data"
        dest.write_bytes(expected[:1000])

        async with registry() as reg, RegistryClient() as client:
            reg.add("a1")
            size = await client.download_file(reg.url, "a1", "model.data", dest)

        assert reg.headers[-1]["Range"] == "bytes=1000-"
        assert dest.read_bytes() == expected
        assert size == len(expected)

    @pytest.mark.asyncio
    async def test_already_complete(self, registry, tmp_path):
        """416 on a complete file leaves it untouched."""
        expected = payload_bytes("a1", "image.jpg")
        dest = tmp_path / "image.jpg"
        dest.write_bytes(expected)

        async with registry() as reg, RegistryClient() as client:
            reg.add("a1")
            size = await client.download_file(reg.url, "a1", "image.jpg", dest)

        assert size == len(expected)
        assert dest.read_bytes() == expected

    @pytest.mark.asyncio
    async def test_missing_file(self, registry, tmp_path):
        async with registry() as reg, RegistryClient() as client:
            reg.add("a1", files=["image.jpg"])
            with pytest.raises(aiohttp.ClientResponseError):
                await client.download_file(reg.url, "a1", "model.json", tmp_path / "model.json")
