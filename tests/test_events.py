import base64

from timetracker_voice.events import (
    AudioDelta,
    AudioDone,
    ErrorEvent,
    FunctionCallDone,
    ResponseDone,
    SessionCreated,
    SpeechStarted,
    SpeechStopped,
    TranscriptDelta,
    TranscriptDone,
    decode_frame,
    parse_event,
)


def test_known_types_parse_to_typed_events():
    assert isinstance(parse_event({"type": "session.created", "session": {"id": "s1"}}), SessionCreated)
    assert parse_event({"type": "input_audio_buffer.speech_started"}) == SpeechStarted()
    assert parse_event({"type": "input_audio_buffer.speech_stopped"}) == SpeechStopped()
    assert parse_event({"type": "response.audio_transcript.delta", "delta": "Hi"}) == TranscriptDelta("Hi")
    assert parse_event({"type": "response.audio_transcript.done", "transcript": "Hi there"}) == TranscriptDone(
        "Hi there"
    )
    assert parse_event({"type": "response.audio.done"}) == AudioDone()
    done = parse_event({"type": "response.done", "response": {"status": "completed"}})
    assert isinstance(done, ResponseDone)
    assert done.response["status"] == "completed"


def test_audio_delta_is_decoded():
    event = parse_event({"type": "response.audio.delta", "delta": base64.b64encode(b"\x01\x02").decode()})
    assert event == AudioDelta(b"\x01\x02")


def test_bad_audio_delta_is_skipped():
    assert parse_event({"type": "response.audio.delta", "delta": "not base64!!"}) is None


def test_function_call_arguments_are_parsed():
    event = parse_event(
        {
            "type": "response.function_call_arguments.done",
            "call_id": "call_1",
            "name": "create_task",
            "arguments": '{"title": "Gym", "date": "2025-06-01"}',
        }
    )
    assert isinstance(event, FunctionCallDone)
    assert event.error is None
    assert event.invocation.arguments == {"title": "Gym", "date": "2025-06-01"}
    assert event.invocation.call_id == "call_1"


def test_malformed_function_arguments_keep_call_id():
    event = parse_event(
        {"type": "response.function_call_arguments.done", "call_id": "call_2", "name": "get_tasks", "arguments": "{"}
    )
    assert event.invocation is None
    assert event.call_id == "call_2"
    assert event.error.startswith("Invalid arguments")

    listed = parse_event(
        {"type": "response.function_call_arguments.done", "call_id": "call_3", "name": "get_tasks", "arguments": "[]"}
    )
    assert listed.invocation is None


def test_error_event_message():
    event = parse_event({"type": "error", "error": {"message": "Invalid session"}})
    assert event == ErrorEvent(message="Invalid session", source="remote")


def test_unhandled_types_are_ignored():
    assert parse_event({"type": "rate_limits.updated"}) is None
    assert parse_event({}) is None


def test_decode_frame_rejects_garbage():
    assert decode_frame("not json") is None
    assert decode_frame("[1, 2]") is None
    assert decode_frame('{"type": "error"}') == {"type": "error"}
