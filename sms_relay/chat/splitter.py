"""Split model replies into SMS-sized messages along paragraph boundaries."""

from typing import List

PARAGRAPH_DELIMITER = "\n\n"

# Recommended length for maximum deliverability; Twilio's hard limit is 1600.
# https://support.twilio.com/hc/en-us/articles/360033806753-Maximum-Message-Length-with-Twilio-Programmable-Messaging
DEFAULT_MAX_MESSAGE_LENGTH = 320


def split_into_messages(text: str, max_length: int = DEFAULT_MAX_MESSAGE_LENGTH) -> List[str]:
    """Greedily pack paragraphs into messages of at most `max_length` characters.

    Paragraphs are separated by a blank line. A paragraph joins the current
    message (with the blank line re-inserted) while the result still fits;
    otherwise the current message is closed and the paragraph starts the next
    one. The last message is always emitted, so empty text yields `[""]`.

    Warning: a single paragraph longer than `max_length` is emitted as one
    oversized message; it is never cut mid-paragraph.

    Args:
        text: Reply text to split
        max_length: Maximum characters per message

    Returns:
        Non-empty list of messages; joining them with the paragraph delimiter
        reproduces `text`

    Raises:
        ValueError: If max_length is less than 1
    """
    if max_length < 1:
        raise ValueError(f"max_length must be positive, got {max_length}")

    paragraphs = text.split(PARAGRAPH_DELIMITER)

    messages: List[str] = []
    current = paragraphs[0]
    for paragraph in paragraphs[1:]:
        if len(current) + len(PARAGRAPH_DELIMITER) + len(paragraph) > max_length:
            messages.append(current)
            current = paragraph
        else:
            current = f"{current}{PARAGRAPH_DELIMITER}{paragraph}"

    messages.append(current)
    return messages
