from __future__ import annotations

import re
from typing import Optional

from ..contracts import AnswerRequest

UNEXTRACTABLE_TRANSCRIPT = "Unable to extract specific question from audio"

_CONTEXT_PROMPTS: dict[str, dict[str, str]] = {
    "html/css/javascript": {
        "standard": "Your answer should focus on HTML, CSS or Javascript concepts, best practices, and standards.",
        "audio": "Focus on HTML, CSS or Javascript concepts, best practices, and standards.",
    },
    "typescript": {
        "standard": "Your answer should focus on TypeScript language concepts, features, type system, and best practices.",
        "audio": "Focus on TypeScript language concepts, features, type system, and best practices.",
    },
    "reactjs": {
        "standard": "Your answer should focus on React.js concepts, components, hooks, and best practices.",
        "audio": "Focus on React.js concepts, components, hooks, and best practices.",
    },
    "nextjs": {
        "standard": "Your answer should focus on Next.js framework concepts, features, and best practices.",
        "audio": "Focus on Next.js framework concepts, features, and best practices.",
    },
    "interview": {
        "standard": "Your answer should be formatted as a concise interview response, highlighting key points clearly.",
        "audio": "Format your response as a concise interview answer, highlighting key points clearly.",
    },
    "general": {
        "standard": "Your answer should focus on general frontend development concepts and best practices.",
        "audio": "Focus on general frontend development concepts and best practices.",
    },
}

_VI_PREAMBLE = "Question will be in Vietnamese and answer must be in Vietnamese."

_AUDIO_INSTRUCTIONS = {
    "en": (
        "IMPORTANT: If there are multiple questions in the audio, you MUST respond to ALL of them in order. "
        'You MUST clearly identify each question by writing "Question 1: [question content]" before answering it. '
        'If there are multiple questions, you must list them in the format "Question 1: ...", "Question 2: ...", etc.\n'
        "Use Markdown formatting for better readability in your answers."
    ),
    "vi": (
        "QUAN TRỌNG: Nếu có nhiều câu hỏi trong đoạn âm thanh, bạn PHẢI trả lời tất cả các câu hỏi theo thứ tự. "
        'Bạn PHẢI nêu rõ từng câu hỏi bằng cách viết "Câu hỏi 1: [nội dung câu hỏi]" trước khi trả lời. '
        'Nếu có nhiều câu hỏi, bạn phải liệt kê chúng theo định dạng "Câu hỏi 1: ...", "Câu hỏi 2: ...", v.v.\n'
        "Sử dụng định dạng Markdown cho câu trả lời của bạn."
    ),
}

_LABELLED_RE = re.compile(
    r"(?:Question|Câu hỏi)\s*\d+\s*:\s*(.*?)(?=(?:Question|Câu hỏi)\s*\d+|[\n\r]|$)",
    flags=re.IGNORECASE,
)
_QUOTED_RE = re.compile(r"[“”\"']([^“”\"'\n]{5,})[“”\"'](?:\?|\.)")
_HEARD_RE = re.compile(
    r"(?:I heard you ask|You asked)(?:[:\s]+)[\"']?([^\"'\n.?]{5,}\??)[\"']",
    flags=re.IGNORECASE,
)
_QUESTION_RE = re.compile(r"([^.!?\n]{10,}\?)")


def context_prompt(question_context: str = "general", audio: bool = False) -> str:
    entry = _CONTEXT_PROMPTS.get(question_context) or _CONTEXT_PROMPTS["general"]
    return entry["audio" if audio else "standard"]


def _custom(custom_context: str) -> str:
    text = (custom_context or "").strip()
    return f"{text} " if text else ""


def build_prompt(request: AnswerRequest) -> str:
    follow_up = ""
    if request.previous_question:
        follow_up = (
            f'This is a follow-up question. Previous question was: "{request.previous_question}". '
        )
    completion = (
        "Answer the following question concisely using Markdown formatting for better "
        f"readability: {request.transcript}. Use headings, lists, and code blocks where appropriate."
    )
    body = f"{context_prompt(request.question_context)} {follow_up}{_custom(request.custom_context)}{completion}"
    if request.lang == "vi":
        return f"{_VI_PREAMBLE} {body}"
    return body


def build_audio_prompt(lang: str, question_context: str = "general", custom_context: str = "") -> str:
    lead = "Đây là nội dung âm thanh." if lang == "vi" else "This is audio content."
    instructions = _AUDIO_INSTRUCTIONS["vi" if lang == "vi" else "en"]
    return f"{lead} {context_prompt(question_context, audio=True)} {_custom(custom_context)}\n{instructions}"


def _joined(matches: list[str]) -> Optional[str]:
    cleaned = [m.strip() for m in matches if m.strip()]
    return " | ".join(cleaned) if cleaned else None


def extract_transcript(answer: str) -> str:
    """Recover the question(s) a direct-audio answer responded to."""
    text = answer or ""
    for pattern in (_LABELLED_RE, _QUOTED_RE, _HEARD_RE, _QUESTION_RE):
        found = _joined(pattern.findall(text))
        if found:
            return found

    first_line = re.split(r"[\n\r]", text)[0]
    if first_line and len(first_line) < 200:
        return first_line
    return UNEXTRACTABLE_TRANSCRIPT
