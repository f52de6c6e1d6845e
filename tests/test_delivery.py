"""
Tests for the batched and streamed speech delivery strategies.
"""

import pytest

from src.restobot.config import Config, DeliveryMode, get_config
from src.restobot.delivery import (
    BatchedDelivery,
    StreamedDelivery,
    create_delivery,
)
from src.restobot.dialog_types import DialogOutcome
from src.restobot.persona import get_utterances


@pytest.fixture
def utterances():
    return get_utterances(get_config())


class TestBatchedDelivery:
    @pytest.mark.asyncio
    async def test_speak_and_listen_is_one_declarative_instruction(self, wire, session, utterances):
        delivery = BatchedDelivery(get_config())
        session.expect_reply("m1")

        await delivery.speak_and_listen(session, "На какую дату?")

        assert len(wire.sent) == 1
        assert wire.sent[0]["type"] == "ack"
        assert wire.sent[0]["msgid"] == "m1"
        assert wire.sent[0]["data"] == [
            {"verb": "say", "text": "На какую дату?"},
            {"verb": "gather", "input": ["speech"], "actionHook": "/speech", "timeout": 10},
            {"verb": "say", "text": utterances.lost_caller},
            {"verb": "hangup"},
        ]

    @pytest.mark.asyncio
    async def test_configure_prefixes_first_reply_only(self, wire, session):
        delivery = BatchedDelivery(get_config())
        session.expect_reply("m1")

        await delivery.configure(session)
        await delivery.speak_and_listen(session, "Здравствуйте!")
        await delivery.speak_and_listen(session, "Ещё раз")

        first, second = wire.verb_lists()
        assert first[0]["verb"] == "config"
        assert [v["verb"] for v in second] == ["say", "gather", "say", "hangup"]

    @pytest.mark.asyncio
    async def test_speak_and_end_with_farewell(self, wire, session):
        delivery = BatchedDelivery(get_config())
        session.expect_reply("m1")

        await delivery.speak_and_end(session, "Бронь подтверждена.", farewell="До свидания!")

        assert wire.last_verbs() == [
            {"verb": "say", "text": "Бронь подтверждена."},
            {"verb": "pause", "length": 1},
            {"verb": "say", "text": "До свидания!"},
            {"verb": "hangup"},
        ]

    @pytest.mark.asyncio
    async def test_reprompts_once_then_gives_up(self, wire, session, utterances):
        delivery = BatchedDelivery(get_config())

        session.expect_reply("m1")
        first = await delivery.on_empty_transcript(session, attempts=1)
        assert first == DialogOutcome.CONTINUE
        assert wire.last_verbs()[0] == {"verb": "say", "text": utterances.reprompt}
        assert wire.last_verbs()[2] == {"verb": "say", "text": utterances.no_input_give_up}

        session.expect_reply("m2")
        second = await delivery.on_empty_transcript(session, attempts=2)
        assert second == DialogOutcome.END_BY_TIMEOUT
        assert wire.last_verbs() == [
            {"verb": "say", "text": utterances.no_input_give_up},
            {"verb": "hangup"},
        ]

    @pytest.mark.asyncio
    async def test_discard_sends_nothing(self, wire, session):
        await BatchedDelivery(get_config()).discard(session, "m9")
        assert wire.sent == []

    @pytest.mark.asyncio
    async def test_gather_timeout_is_configurable(self, wire, session):
        delivery = BatchedDelivery(Config(gather_timeout_seconds=4))

        await delivery.speak_and_listen(session, "Алло?")

        assert wire.last_verbs()[1]["timeout"] == 4


class TestStreamedDelivery:
    @pytest.mark.asyncio
    async def test_speak_and_listen_pushes_tokens_and_flushes(self, wire, session, no_sleep):
        delivery = StreamedDelivery(get_config(), sleep=no_sleep)
        session.expect_reply("m1")

        await delivery.speak_and_listen(session, "На какую дату?")

        assert wire.sent[0] == {"type": "ack", "msgid": "m1", "data": [{"verb": "say", "stream": True}]}
        assert wire.sent[1]["command"] == "tts:tokens"
        assert wire.sent[1]["data"]["tokens"] == "На какую дату?"
        assert wire.sent[2]["command"] == "tts:flush"
        assert not wire.commands("redirect")

    @pytest.mark.asyncio
    async def test_without_pending_hook_only_tokens_are_sent(self, wire, session, no_sleep):
        delivery = StreamedDelivery(get_config(), sleep=no_sleep)

        await delivery.speak_and_listen(session, "Да?")

        assert [m["command"] for m in wire.sent] == ["tts:tokens", "tts:flush"]

    @pytest.mark.asyncio
    async def test_configure_enables_barge_in(self, wire, session, no_sleep):
        delivery = StreamedDelivery(get_config(), sleep=no_sleep)
        session.expect_reply("m-new")

        await delivery.configure(session)
        await delivery.speak_and_listen(session, "Здравствуйте!")

        config = wire.sent[0]["data"][0]
        assert config["verb"] == "config"
        assert config["bargeIn"]["enable"] is True
        assert config["ttsStream"] == {"enable": True}

    @pytest.mark.asyncio
    async def test_speak_and_end_waits_then_hangs_up(self, wire, session, no_sleep):
        delivery = StreamedDelivery(get_config(), sleep=no_sleep)

        await delivery.speak_and_end(session, "Спасибо!", farewell="До свидания!")

        assert wire.sent[0]["data"]["tokens"] == "Спасибо! До свидания!"
        assert no_sleep.calls == [3.0]
        assert wire.sent[-1] == {
            "type": "command",
            "command": "redirect",
            "queueCommand": False,
            "data": [{"verb": "hangup"}],
        }

    @pytest.mark.parametrize(
        "length,expected",
        [(1, 3.0), (60, 3.6), (1000, 5.0)],
    )
    def test_hangup_delay_scales_with_length_within_bounds(self, length, expected):
        delivery = StreamedDelivery(get_config())
        assert delivery.hangup_delay("а" * length) == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_empty_transcript_keeps_listening(self, wire, session, no_sleep):
        delivery = StreamedDelivery(get_config(), sleep=no_sleep)
        session.expect_reply("m1")

        for attempts in (1, 2, 3):
            outcome = await delivery.on_empty_transcript(session, attempts)
            assert outcome == DialogOutcome.CONTINUE
            session.expect_reply(f"m{attempts + 1}")

        assert all(m == {"type": "ack", "msgid": m["msgid"]} for m in wire.sent)
        assert not wire.said()

    @pytest.mark.asyncio
    async def test_discard_acks_the_hook(self, wire, session, no_sleep):
        await StreamedDelivery(get_config(), sleep=no_sleep).discard(session, "m9")
        assert wire.sent == [{"type": "ack", "msgid": "m9"}]


class TestCreateDelivery:
    def test_mode_from_config(self):
        assert isinstance(create_delivery(config=Config(delivery_mode="streamed")), StreamedDelivery)
        assert isinstance(create_delivery(config=Config(delivery_mode="batched")), BatchedDelivery)

    def test_explicit_mode_wins(self):
        delivery = create_delivery(DeliveryMode.STREAMED, config=Config())
        assert delivery.mode == DeliveryMode.STREAMED
