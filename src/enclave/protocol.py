"""Message vocabulary and inbound message validation shared by host and guest."""

import re

from loguru import logger

MESSAGE_HANDSHAKE_INIT: str = "handshake-init"
MESSAGE_HANDSHAKE_READY: str = "handshake-ready"
MESSAGE_ATTRIBUTE_CHANGE: str = "attribute-change"
MESSAGE_EVENT: str = "event"
MESSAGE_CUSTOM_EVENT: str = "custom-event"
MESSAGE_FUNCTION_CALL: str = "function-call"
MESSAGE_FUNCTION_RESPONSE: str = "function-response"
MESSAGE_FUNCTION_RELEASE: str = "function-release"
MESSAGE_FUNCTION_RELEASE_BATCH: str = "function-release-batch"

VALID_MESSAGE_TYPES: frozenset[str] = frozenset(
    {
        MESSAGE_HANDSHAKE_INIT,
        MESSAGE_HANDSHAKE_READY,
        MESSAGE_ATTRIBUTE_CHANGE,
        MESSAGE_EVENT,
        MESSAGE_CUSTOM_EVENT,
        MESSAGE_FUNCTION_CALL,
        MESSAGE_FUNCTION_RESPONSE,
        MESSAGE_FUNCTION_RELEASE,
        MESSAGE_FUNCTION_RELEASE_BATCH,
    }
)

RESERVED_ATTRIBUTE_NAMES: frozenset[str] = frozenset({"__proto__", "constructor", "prototype"})
EVENT_NAME_PATTERN: re.Pattern[str] = re.compile(r"^[a-zA-Z0-9_:.-]+$")

Message = dict[str, object]


def is_valid_event_name(name: object) -> bool:
    """Check whether ``name`` is usable as an event name.

    :param name: Candidate event name.
    :returns: ``True`` when the name is a non-empty string of allowed characters.
    """
    if isinstance(name, str) is False:
        return False
    return EVENT_NAME_PATTERN.match(name) is not None


def is_safe_attribute_name(name: object) -> bool:
    """Check whether ``name`` may be written into a props bag.

    :param name: Candidate attribute name.
    :returns: ``True`` when the name is a string outside the reserved set.
    """
    if isinstance(name, str) is False:
        return False
    return name not in RESERVED_ATTRIBUTE_NAMES


def _is_non_empty_str(value: object) -> bool:
    return isinstance(value, str) is True and len(value) > 0


def _has_required_fields(message: dict[str, object], message_type: str) -> bool:
    """Apply kind-specific field checks to a message with a known type.

    :param message: Candidate message.
    :param message_type: Already-whitelisted message type.
    :returns: ``True`` when every required field is present and well typed.
    """
    if message_type == MESSAGE_HANDSHAKE_INIT:
        return isinstance(message.get("payload"), dict)

    if message_type == MESSAGE_HANDSHAKE_READY:
        return True

    if message_type == MESSAGE_ATTRIBUTE_CHANGE:
        return _is_non_empty_str(message.get("attribute")) and "value" in message

    if message_type == MESSAGE_EVENT:
        return _is_non_empty_str(message.get("name"))

    if message_type == MESSAGE_CUSTOM_EVENT:
        payload: object = message.get("payload")
        if isinstance(payload, dict) is False:
            return False
        return _is_non_empty_str(payload.get("name"))

    if message_type == MESSAGE_FUNCTION_CALL:
        if _is_non_empty_str(message.get("callId")) is False:
            return False
        if _is_non_empty_str(message.get("fnId")) is False:
            return False
        return isinstance(message.get("params"), list)

    if message_type == MESSAGE_FUNCTION_RESPONSE:
        if _is_non_empty_str(message.get("callId")) is False:
            return False
        if isinstance(message.get("success"), bool) is False:
            return False
        error: object = message.get("error")
        return error is None or isinstance(error, str)

    if message_type == MESSAGE_FUNCTION_RELEASE:
        return _is_non_empty_str(message.get("fnId"))

    if message_type == MESSAGE_FUNCTION_RELEASE_BATCH:
        fn_ids: object = message.get("fnIds")
        if isinstance(fn_ids, list) is False:
            return False
        return all(isinstance(fn_id, str) for fn_id in fn_ids)

    return False


def validate_message(raw: object, log_prefix: str = "[enclave]") -> Message | None:
    """Validate one inbound channel payload before any handler sees it.

    Never raises; ``None`` means the caller must ignore the payload.

    :param raw: Untyped data received from the channel.
    :param log_prefix: Component prefix used in diagnostics.
    :returns: The message when valid, otherwise ``None``.
    """
    if isinstance(raw, dict) is False:
        logger.warning(f"{log_prefix} Invalid message format: {raw!r}")
        return None

    message_type: object = raw.get("type")
    if isinstance(message_type, str) is False:
        logger.warning(f"{log_prefix} Invalid message type (not a string): {raw!r}")
        return None

    if message_type not in VALID_MESSAGE_TYPES:
        logger.warning(f"{log_prefix} Unknown message type (potential attack): {message_type}")
        return None

    if _has_required_fields(raw, message_type) is False:
        logger.warning(f"{log_prefix} Invalid {message_type} message: {raw!r}")
        return None

    return raw


def function_call_message(call_id: str, fn_id: str, params: object) -> Message:
    """Build a ``function-call`` message."""
    return {"type": MESSAGE_FUNCTION_CALL, "callId": call_id, "fnId": fn_id, "params": params}


def function_response_message(
    call_id: str,
    success: bool,
    result: object = None,
    error: str | None = None,
    error_type: str | None = None,
) -> Message:
    """Build a ``function-response`` message.

    :param call_id: Correlation id of the call being answered.
    :param success: Whether the call completed without raising.
    :param result: Serialized result for successful calls.
    :param error: Error message for failed calls.
    :param error_type: Remote exception class name for failed calls.
    :returns: Response message.
    """
    message: Message = {"type": MESSAGE_FUNCTION_RESPONSE, "callId": call_id, "success": success}
    if success is True:
        message["result"] = result
        return message
    message["error"] = error if error is not None else "Unknown error"
    if error_type is not None:
        message["errorType"] = error_type
    return message


def function_release_message(fn_id: str) -> Message:
    """Build a ``function-release`` message."""
    return {"type": MESSAGE_FUNCTION_RELEASE, "fnId": fn_id}


def function_release_batch_message(fn_ids: list[str]) -> Message:
    """Build a ``function-release-batch`` message."""
    return {"type": MESSAGE_FUNCTION_RELEASE_BATCH, "fnIds": list(fn_ids)}
