"""Tests for the Layer 1 pattern filter."""

import pytest

from moddirector.config import RegexPatternConfig, default_patterns
from moddirector.errors import InvalidPatternError
from moddirector.moderation.models import PASS, FilterViolation, PatternType
from moddirector.moderation.pattern_filter import PatternFilter, PatternSet


@pytest.fixture
def pattern_filter() -> PatternFilter:
    return PatternFilter(
        PatternSet.compile(
            slurs=[r"(?i)\bbadword\b"],
            invite_links=[r"discord\.gg/\w+"],
            phishing_urls=[r"free-?nitro\.\w+"],
        )
    )


class TestPatternSet:
    """Tests for PatternSet compilation."""

    def test_empty_matches_nothing(self) -> None:
        assert len(PatternSet.empty()) == 0
        assert PatternFilter().evaluate("discord.gg/abc") == PASS

    def test_invalid_pattern_rejected(self) -> None:
        """Bad syntax fails at compile time with category and pattern."""
        with pytest.raises(InvalidPatternError) as exc_info:
            PatternSet.compile(invite_links=["(unclosed"])
        assert exc_info.value.pattern == "(unclosed"
        assert exc_info.value.category == "invite_link"

    def test_from_config(self) -> None:
        patterns = PatternSet.from_config(default_patterns())
        assert len(patterns) == 6
        assert patterns.slurs == ()

    def test_groups_in_priority_order(self) -> None:
        categories = [c for c, _ in PatternSet.empty().groups()]
        assert categories == [PatternType.SLUR, PatternType.INVITE_LINK, PatternType.PHISHING_URL]


class TestPatternFilter:
    """Tests for PatternFilter.evaluate."""

    def test_clean_message_passes(self, pattern_filter: PatternFilter) -> None:
        assert pattern_filter.evaluate("hello everyone") == PASS

    @pytest.mark.parametrize(
        ("content", "expected"),
        [
            ("you BADWORD", PatternType.SLUR),
            ("join discord.gg/abc123", PatternType.INVITE_LINK),
            ("claim at free-nitro.xyz", PatternType.PHISHING_URL),
        ],
    )
    def test_category_detected(
        self, pattern_filter: PatternFilter, content: str, expected: PatternType
    ) -> None:
        result = pattern_filter.evaluate(content)
        assert isinstance(result, FilterViolation)
        assert result.pattern_type is expected

    def test_slur_beats_invite_and_phishing(self, pattern_filter: PatternFilter) -> None:
        """Highest priority category wins when several match."""
        result = pattern_filter.evaluate("badword discord.gg/x free-nitro.ru")
        assert isinstance(result, FilterViolation)
        assert result.pattern_type is PatternType.SLUR
        assert result.reason == "Matched slur pattern"

    def test_invite_beats_phishing(self, pattern_filter: PatternFilter) -> None:
        result = pattern_filter.evaluate("free-nitro.ru and discord.gg/x")
        assert isinstance(result, FilterViolation)
        assert result.pattern_type is PatternType.INVITE_LINK

    def test_default_patterns(self) -> None:
        """Built-in patterns catch invites and nitro scams."""
        pf = PatternFilter(PatternSet.from_config(default_patterns()))
        invite = pf.evaluate("discordapp.com/invite/xyz")
        scam = pf.evaluate("visit discord-nitro-gift.com now")
        assert isinstance(invite, FilterViolation)
        assert invite.pattern_type is PatternType.INVITE_LINK
        assert isinstance(scam, FilterViolation)
        assert scam.pattern_type is PatternType.PHISHING_URL


class TestPatternUpdates:
    """Tests for runtime pattern swaps."""

    def test_update_patterns_takes_effect(self, pattern_filter: PatternFilter) -> None:
        pattern_filter.update_patterns(PatternSet.compile(slurs=["newterm"]))
        assert pattern_filter.evaluate("discord.gg/abc") == PASS
        result = pattern_filter.evaluate("newterm")
        assert isinstance(result, FilterViolation)

    def test_snapshot_is_unaffected_by_swap(self, pattern_filter: PatternFilter) -> None:
        """A reader holding the old set keeps a consistent view."""
        before = pattern_filter.patterns
        pattern_filter.update_patterns(PatternSet.empty())
        assert len(before) == 3
        assert len(pattern_filter.patterns) == 0

    def test_invalid_update_keeps_old_set(self, pattern_filter: PatternFilter) -> None:
        config = RegexPatternConfig(slurs=["[bad"])
        with pytest.raises(InvalidPatternError):
            pattern_filter.update_from_config(config)
        assert isinstance(pattern_filter.evaluate("badword"), FilterViolation)
