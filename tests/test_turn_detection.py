"""
Turn-Detection Controller tests

  Mode exclusivity: VAD config xor turn_detection null
  Deferred apply:   mode chosen while unbound is pushed on bind
  PTT bracket:      start → clear, end → commit + response.create, once
"""

from voice_session.config import TurnDetectionConfig
from voice_session.turn_detection import TurnDetectionController, TurnDetectionMode


def _bound(config: TurnDetectionConfig = None):
    sent = []
    controller = TurnDetectionController(config or TurnDetectionConfig())
    controller.bind(sent.append)
    return controller, sent


class TestModes:

    def test_vad_payload_defaults(self):
        controller, sent = _bound()
        assert sent == [{
            "type": "session.update",
            "session": {"turn_detection": {
                "type": "server_vad",
                "threshold": 0.9,
                "prefix_padding_ms": 300,
                "silence_duration_ms": 500,
                "create_response": True,
            }},
        }]

    def test_ptt_sends_null_turn_detection(self):
        controller, sent = _bound()
        controller.set_mode(TurnDetectionMode.PTT)
        assert sent[-1] == {"type": "session.update", "session": {"turn_detection": None}}

    def test_mode_remembered_while_unbound(self):
        sent = []
        controller = TurnDetectionController(TurnDetectionConfig())
        controller.set_mode("ptt")
        assert controller.mode is TurnDetectionMode.PTT
        assert sent == []

        controller.bind(sent.append)
        assert sent == [{"type": "session.update", "session": {"turn_detection": None}}]

    def test_push_to_talk_config_starts_in_ptt(self):
        controller = TurnDetectionController(TurnDetectionConfig(push_to_talk=True))
        assert controller.mode is TurnDetectionMode.PTT
        assert controller.turn_detection_payload() is None

    def test_reconfigure_reapplies_current_mode(self):
        controller, sent = _bound()
        controller.reconfigure(TurnDetectionConfig(threshold=0.6))
        assert sent[-1]["session"]["turn_detection"]["threshold"] == 0.6


class TestPushToTalk:

    def test_start_and_end_bracket_an_utterance(self):
        controller, sent = _bound()
        controller.set_mode(TurnDetectionMode.PTT)
        sent.clear()

        assert controller.start() is True
        assert controller.user_speaking
        assert controller.end() is True
        assert not controller.user_speaking
        assert [e["type"] for e in sent] == [
            "input_audio_buffer.clear",
            "input_audio_buffer.commit",
            "response.create",
        ]

    def test_end_without_start_is_noop(self):
        controller, sent = _bound()
        controller.set_mode(TurnDetectionMode.PTT)
        sent.clear()
        assert controller.end() is False
        assert sent == []

    def test_second_end_is_noop(self):
        controller, sent = _bound()
        controller.set_mode(TurnDetectionMode.PTT)
        controller.start()
        controller.end()
        sent.clear()
        assert controller.end() is False
        assert sent == []

    def test_start_ignored_in_vad(self):
        controller, sent = _bound()
        sent.clear()
        assert controller.start() is False
        assert sent == []

    def test_start_ignored_without_transport(self):
        controller = TurnDetectionController(TurnDetectionConfig(push_to_talk=True))
        assert controller.start() is False
        assert not controller.user_speaking

    def test_switch_to_vad_abandons_open_utterance(self):
        controller, sent = _bound()
        controller.set_mode(TurnDetectionMode.PTT)
        controller.start()
        controller.set_mode(TurnDetectionMode.VAD)
        assert not controller.user_speaking
        assert "input_audio_buffer.commit" not in [e["type"] for e in sent]
        assert sent[-1]["session"]["turn_detection"]["type"] == "server_vad"

    def test_unbind_resets_speaking(self):
        controller, _ = _bound()
        controller.set_mode(TurnDetectionMode.PTT)
        controller.start()
        controller.unbind()
        assert not controller.bound
        assert not controller.user_speaking
        assert controller.end() is False
