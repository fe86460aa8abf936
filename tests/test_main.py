"""
Tests for the cache warm-up command.
"""

import pytest

from mapsync.main import build_parser, criteria_from_args, warm


class TestCommandLine:
    """Test argument handling and the warm-up run."""

    def test_criteria_from_args(self):
        """Test command line flags become normalized criteria."""
        args = build_parser().parse_args(
            ["--city", "la", "--status", "Completed", "--use", "Office", "Retail", "--priority", "p2", "p1"]
        )
        criteria = criteria_from_args(args).normalized()

        assert criteria.city_slug == "la"
        assert criteria.priority_ids == ("p1", "p2")
        assert [f.type for f in criteria.filters] == ["Project Status", "Property Type"]
        assert criteria.filters[1].value == ("office", "retail")

    def test_no_filters_by_default(self):
        """Test a bare city run has no filters or query."""
        criteria = criteria_from_args(build_parser().parse_args(["--city", "la"]))
        assert criteria.filters == ()
        assert criteria.query is None

    @pytest.mark.asyncio
    async def test_warm_loads_full_dataset(self, memory_source, settings):
        """Test a warm-up run fetches initial and full results once each."""
        size = await warm(criteria_from_args(build_parser().parse_args(["--city", "la"])), settings, memory_source)
        assert size == 420
        assert memory_source.query_count == 2
