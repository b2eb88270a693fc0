"""
Tests for company get-or-create resolution.
"""

import pytest
from services.record_reconciler.errors import InvalidIdentity, UpstreamError
from services.record_reconciler.identity import ParentResolution, ParentSchema, get_or_create_parent

SCHEMA = ParentSchema(source_system="OS – Gmail Inbox")


class TestGetOrCreateParent:
    """Test resolution against the emulator."""

    @pytest.mark.asyncio
    async def test_creates_then_converges(self, record_store, fake_airtable):
        """Test the second call returns the record the first one created."""
        first = await get_or_create_parent(record_store, "https://www.Acme.com/about", "Acme Inc", schema=SCHEMA)
        second = await get_or_create_parent(record_store, "acme.com", schema=SCHEMA)

        assert first.created is True
        assert first.matched_by is None
        assert second.created is False
        assert second.matched_by == "primary"
        assert second.record_id == first.record_id
        assert second.name == "Acme Inc"
        assert len(fake_airtable.records("Companies")) == 1

    @pytest.mark.asyncio
    async def test_created_record_fields(self, record_store, fake_airtable):
        await get_or_create_parent(record_store, "acme.com", "  Acme Inc  ", schema=SCHEMA)

        [record] = fake_airtable.records("Companies")
        assert record["fields"] == {
            "Company Name": "Acme Inc",
            "Normalized Domain": "acme.com",
            "Domain": "acme.com",
            "Source System": "OS – Gmail Inbox",
        }

    @pytest.mark.asyncio
    async def test_name_defaults_to_identity(self, record_store):
        result = await get_or_create_parent(record_store, "acme.com", "   ", schema=SCHEMA)
        assert result.name == "acme.com"

    @pytest.mark.asyncio
    async def test_legacy_record_matched_by_secondary(self, record_store, fake_airtable):
        """Test records that only carry the legacy field are still found."""
        legacy_id = fake_airtable.seed("Companies", {"Company Name": "Old Acme", "Domain": "acme.com"})

        result = await get_or_create_parent(record_store, "ACME.com", schema=SCHEMA)

        assert result.record_id == legacy_id
        assert result.matched_by == "secondary"
        assert result.created is False
        assert result.name == "Old Acme"
        assert fake_airtable.calls("POST") == []

    @pytest.mark.asyncio
    async def test_primary_probed_before_secondary(self, record_store, fake_airtable):
        primary_id = fake_airtable.seed("Companies", {"Normalized Domain": "acme.com"})
        fake_airtable.seed("Companies", {"Domain": "acme.com"})

        result = await get_or_create_parent(record_store, "acme.com", schema=SCHEMA)

        assert result.record_id == primary_id
        assert result.matched_by == "primary"
        assert len(fake_airtable.calls("GET")) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["", "   ", "https://", "www.", None])
    async def test_empty_identity_rejected(self, record_store, fake_airtable, value):
        """Test nothing is looked up or created for an empty identity."""
        with pytest.raises(InvalidIdentity):
            await get_or_create_parent(record_store, value, schema=SCHEMA)

        assert fake_airtable.requests == []

    @pytest.mark.asyncio
    async def test_lookup_failure_propagates(self, record_store, fake_airtable):
        fake_airtable.fail("GET", "Companies", status=500)

        with pytest.raises(UpstreamError):
            await get_or_create_parent(record_store, "acme.com", schema=SCHEMA)

        assert fake_airtable.calls("POST") == []

    def test_to_response(self):
        resolution = ParentResolution(
            record_id="rec1", created=False, matched_by="secondary", name="Acme", identity="acme.com"
        )
        assert resolution.to_response() == {
            "ok": True,
            "recordId": "rec1",
            "created": False,
            "matchedBy": "secondary",
            "name": "Acme",
            "domain": "acme.com",
        }
