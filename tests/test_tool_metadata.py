# tests/test_tool_metadata.py
"""
Unit tests for tool metadata signatures and path patterns.
"""
import pytest

from v402.protocol.tool_metadata import (
    canonical_tool_metadata,
    match_path_pattern,
    sign_tool_metadata,
    verify_tool_metadata_signature,
)

from factories import SIGNING_PUBKEY_HEX, SIGNING_SEED_HEX, make_tool


class TestToolMetadataSignature:
    """Test metadata signing."""

    def test_signed_tool_verifies(self):
        """A freshly signed tool verifies."""
        tool = make_tool()
        assert verify_tool_metadata_signature(tool, tool.metadataSignature, SIGNING_PUBKEY_HEX) is True

    def test_price_change_invalidates(self):
        """Changing the pricing model breaks the signature."""
        tool = make_tool()
        repriced = tool.model_copy(update={"pricingModel": {"per_call": "0.001"}})
        assert verify_tool_metadata_signature(repriced, tool.metadataSignature, SIGNING_PUBKEY_HEX) is False

    def test_wallet_change_invalidates(self):
        """Redirecting payments to another wallet breaks the signature."""
        tool = make_tool()
        hijacked = tool.model_copy(update={"merchantWallet": "attacker"})
        assert verify_tool_metadata_signature(hijacked, tool.metadataSignature, SIGNING_PUBKEY_HEX) is False

    def test_status_not_signed(self):
        """Pausing a tool does not require re-signing."""
        tool = make_tool()
        paused = tool.model_copy(update={"status": "paused"})
        assert canonical_tool_metadata(paused) == canonical_tool_metadata(tool)

    def test_missing_signature(self):
        """An unsigned tool never verifies."""
        tool = make_tool(metadataSignature=None)
        assert verify_tool_metadata_signature(tool, tool.metadataSignature, SIGNING_PUBKEY_HEX) is False

    def test_dict_input(self):
        """Plain dicts sign the same as models."""
        tool = make_tool()
        data = tool.model_dump()
        assert sign_tool_metadata(data, SIGNING_SEED_HEX) == tool.metadataSignature


class TestPathPattern:
    """Test tool path matching."""

    @pytest.mark.parametrize("pattern,path,expected", [
        ("/search", "/search", True),
        ("/search", "/search/x", False),
        ("/search/*", "/search/web", True),
        ("/search/*", "/search/web/deep", False),
        ("/search/**", "/search/web/deep", True),
        ("/items/*/detail", "/items/42/detail", True),
        ("/a.b", "/aXb", False),
    ])
    def test_match(self, pattern, path, expected):
        """'*' matches one segment, '**' any remainder, the rest is literal."""
        assert match_path_pattern(pattern, path) is expected
