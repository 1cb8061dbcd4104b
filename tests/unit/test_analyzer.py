"""Tests for the Layer 2 semantic analyzer."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import patch

import httpx
import pytest

from moddirector.errors import RateLimitedError, RemoteAnalysisError
from moddirector.moderation.analyzer import (
    AnalysisResult,
    CoordinatedHarassment,
    SemanticAnalyzer,
    ViolationMetadata,
    build_system_prompt,
    extract_json,
    format_rules_section,
    parse_reply,
)
from moddirector.moderation.context import ContextMessage, ConversationContext
from moddirector.moderation.models import SeverityLevel
from moddirector.moderation.rate_limiter import TokenBucket

API_URL = "https://classifier.test/v1/models/test:generateContent"


def _envelope(text: str) -> dict[str, Any]:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _analyzer_with(handler) -> SemanticAnalyzer:
    analyzer = SemanticAnalyzer("secret-key", api_url=API_URL)
    analyzer._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return analyzer


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------


class TestExtractJson:
    """Tests for code fence stripping."""

    def test_plain_json_untouched(self) -> None:
        assert extract_json('  {"a": 1}  ') == '{"a": 1}'

    def test_json_fence(self) -> None:
        assert extract_json('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self) -> None:
        assert extract_json('Here you go:\n```\n{"a": 1}\n```') == '{"a": 1}'


class TestParseReply:
    """Tests for hardened and legacy reply formats."""

    def test_hardened_format(self) -> None:
        reply = json.dumps(
            {
                "violations": [
                    {
                        "message_id": "11",
                        "rule_id": "RULE_2",
                        "sanitized_reason": "Harassment",
                        "severity": 0.8,
                        "metadata": {"is_harassment": True},
                    }
                ],
                "coordinated_attack": {"detected": True, "evidence_ids": ["11", "12"]},
                "escalation_detected": True,
            }
        )
        result = parse_reply(reply)

        assert len(result.violations) == 1
        assert result.violations[0].reason == "Harassment"
        assert result.violations[0].severity_level is SeverityLevel.HIGH
        assert result.escalation_detected is True
        assert result.coordinated_harassment.evidence_message_ids == ["11", "12"]
        assert result.has_harassment()
        assert not result.has_spam()

    def test_legacy_format(self) -> None:
        """Replies using ``reason`` fall back to the legacy schema."""
        reply = json.dumps(
            {
                "violations": [{"message_id": "5", "reason": "Spam", "severity": 0.5}],
                "coordinated_harassment": {
                    "detected": True,
                    "target_user_id": "9",
                    "participant_ids": ["1", "2"],
                    "evidence_message_ids": ["5"],
                },
                "escalation_detected": True,
                "escalating_user_id": "1",
            }
        )
        result = parse_reply(reply)

        assert result.violations[0].reason == "Spam"
        assert result.coordinated_harassment.is_valid()
        assert result.coordinated_harassment.target_user_id == "9"
        assert result.escalating_user_id == "1"
        assert result.violation_metadata == {}

    def test_fenced_reply(self) -> None:
        result = parse_reply('```json\n{"violations": []}\n```')
        assert result.violations == []

    def test_low_severity_kept(self) -> None:
        """The analyzer does not filter low severity itself."""
        result = parse_reply(
            '{"violations": [{"message_id": "1", "sanitized_reason": "meh", "severity": 0.1}]}'
        )
        assert result.violations[0].severity_level is SeverityLevel.LOW

    def test_contract_reply_without_violations_keeps_signals(self) -> None:
        """A plain-contract reply with no violations still carries its signals."""
        reply = json.dumps(
            {
                "violations": [],
                "coordinated_harassment": {
                    "detected": True,
                    "target_user_id": "9",
                    "participant_ids": ["1", "2"],
                    "evidence_message_ids": ["5", "6"],
                },
                "escalation_detected": True,
                "escalating_user_id": "2",
            }
        )
        result = parse_reply(reply)

        assert result.violations == []
        assert result.coordinated_harassment.is_valid()
        assert result.coordinated_harassment.participant_ids == ["1", "2"]
        assert result.escalating_user_id == "2"

    def test_hardened_reply_without_violations(self) -> None:
        result = parse_reply(
            '{"violations": [], "coordinated_attack": {"detected": true, "evidence_ids": ["3"]}}'
        )
        assert result.coordinated_harassment.detected
        assert result.coordinated_harassment.evidence_message_ids == ["3"]

    @pytest.mark.parametrize("text", ["not json", '{"violations": [{"message_id": 1}]}', "[1, 2]"])
    def test_unparseable_raises(self, text: str) -> None:
        with pytest.raises(RemoteAnalysisError):
            parse_reply(text)


class TestResultTypes:
    """Tests for result helpers."""

    def test_coordinated_needs_two_participants(self) -> None:
        assert not CoordinatedHarassment(detected=True, participant_ids=["1"]).is_valid()
        assert not CoordinatedHarassment(detected=False, participant_ids=["1", "2"]).is_valid()
        assert CoordinatedHarassment(detected=True, participant_ids=["1", "2"]).is_valid()

    def test_metadata_helpers(self) -> None:
        result = AnalysisResult(
            violation_metadata={
                "1": ViolationMetadata(is_social_engineering=True),
                "2": ViolationMetadata(is_toxic=True, is_spam=True),
            }
        )
        assert result.has_social_engineering()
        assert result.has_toxic_content()
        assert result.has_spam()
        assert not result.has_harassment()


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------


class TestPromptBuilding:
    """Tests for the system prompt."""

    def test_rules_rendered_as_rule_ids(self) -> None:
        section = format_rules_section("Be kind\n\nNo spam\n")
        assert "- RULE_1: Be kind" in section
        assert "- RULE_2: No spam" in section
        assert "RULE_3" not in section

    @pytest.mark.parametrize("rules", [None, "", "   \n "])
    def test_missing_rules(self, rules: str | None) -> None:
        assert "standard community guidelines" in format_rules_section(rules)

    def test_messages_tagged(self, make_buffered) -> None:
        prompt = build_system_prompt(
            [make_buffered(11, "first"), make_buffered(12, "second")], ConversationContext()
        )
        assert "[MSG_ID:11] [USER_1]: first" in prompt
        assert "[MSG_ID:12] [USER_2]: second" in prompt
        assert "No prior conversation context available." in prompt
        assert "{MESSAGES}" not in prompt
        assert '{"violations": []' in prompt

    def test_context_included(self, make_buffered) -> None:
        context = ConversationContext(
            recent_messages=[
                ContextMessage(
                    message_id=1, author_id=2, author_name="bob", content="earlier", channel_id=3
                )
            ],
            server_rules="No memes",
        )
        prompt = build_system_prompt([make_buffered(1)], context)
        assert "bob: earlier" in prompt
        assert "- RULE_1: No memes" in prompt


# ---------------------------------------------------------------------------
# HTTP behaviour
# ---------------------------------------------------------------------------


class TestAnalyze:
    """Tests for SemanticAnalyzer.analyze over a mock transport."""

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_call(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=_envelope("{}"))

        analyzer = _analyzer_with(handler)
        result = await analyzer.analyze([])
        assert result.violations == []
        assert calls == []
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_successful_analysis(self, make_buffered) -> None:
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["key"] = request.url.params.get("key")
            captured["body"] = json.loads(request.content)
            reply = '{"violations": [{"message_id": "1", "reason": "Insult", "severity": 0.9}]}'
            return httpx.Response(200, json=_envelope(reply))

        analyzer = _analyzer_with(handler)
        result = await analyzer.analyze([make_buffered(1, "you are dumb")])

        assert captured["key"] == "secret-key"
        system_text = captured["body"]["system_instruction"]["parts"][0]["text"]
        assert "[MSG_ID:1] [USER_1]: you are dumb" in system_text
        assert captured["body"]["contents"][0]["parts"][0]["text"]
        assert result.violations[0].message_id == "1"
        assert result.violations[0].severity_level is SeverityLevel.HIGH
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_rate_limited_uses_retry_after(self, make_buffered) -> None:
        analyzer = _analyzer_with(lambda _: httpx.Response(429, headers={"retry-after": "12"}))
        with pytest.raises(RateLimitedError) as exc_info:
            await analyzer.analyze([make_buffered(1)])
        assert exc_info.value.retry_after == 12.0
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_rate_limited_default_retry(self, make_buffered) -> None:
        analyzer = _analyzer_with(lambda _: httpx.Response(429))
        with pytest.raises(RateLimitedError) as exc_info:
            await analyzer.analyze([make_buffered(1)])
        assert exc_info.value.retry_after == 60.0
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_server_error(self, make_buffered) -> None:
        analyzer = _analyzer_with(lambda _: httpx.Response(500, text="boom"))
        with pytest.raises(RemoteAnalysisError) as exc_info:
            await analyzer.analyze([make_buffered(1)])
        assert exc_info.value.status_code == 500
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_transport_error(self, make_buffered) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        analyzer = _analyzer_with(handler)
        with pytest.raises(RemoteAnalysisError):
            await analyzer.analyze([make_buffered(1)])
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_garbage_reply(self, make_buffered) -> None:
        analyzer = _analyzer_with(lambda _: httpx.Response(200, json=_envelope("I refuse")))
        with pytest.raises(RemoteAnalysisError):
            await analyzer.analyze([make_buffered(1)])
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_blocked_reply_is_logged(self, make_buffered) -> None:
        """A reply with no candidates counts as clean but is reported."""
        blocked = {"promptFeedback": {"blockReason": "SAFETY"}}
        analyzer = _analyzer_with(lambda _: httpx.Response(200, json=blocked))

        with patch("moddirector.moderation.analyzer.log") as mock_log:
            result = await analyzer.analyze([make_buffered(1), make_buffered(2)])

        assert result.violations == []
        mock_log.warning.assert_called_once_with(
            "analysis_reply_empty", batch_size=2, message_ids=[1, 2], block_reason="SAFETY"
        )
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_waits_for_rate_limiter(self, make_buffered) -> None:
        """Each call takes a permit before dispatch."""
        limiter = TokenBucket(5)
        analyzer = SemanticAnalyzer("k", api_url=API_URL, rate_limiter=limiter)
        analyzer._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda _: httpx.Response(200, json=_envelope("{}")))
        )
        await analyzer.analyze([make_buffered(1)])
        await analyzer.analyze([make_buffered(2)])
        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
        await analyzer.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        analyzer = SemanticAnalyzer("k")
        await analyzer.close()
        await analyzer.close()
