"""
Tutor Prompts

System prompt, greeting, RAG bridge and struggle-analysis prompts used by
the chat core, kept apart from the turn logic.
"""

import json
import re
from typing import Iterable, List, Optional, Sequence

from course_tutor_chat.models import LearningObjective

COURSE_MATERIALS_OPEN = "<course_materials>"
COURSE_MATERIALS_CLOSE = "</course_materials>"

SYSTEM_PROMPT = """You are EngE-AI, an AI tutor for undergraduate engineering students.
Your job is to help students understand course concepts by connecting their
questions to the provided course materials.

Course materials are provided inside <course_materials>...</course_materials> tags.
Use them as context only and never output these tags in a response.

TEACHING METHOD
- Use the Socratic method: guide the student with questions instead of handing over answers.
- Ask exactly ONE question per response and wait for the student's answer.
- Acknowledge what the student got right before asking the next question.
- Build each question on the student's previous answer.

USING COURSE MATERIALS
- Cite where information comes from (e.g. "In Chapter 12.1, ...").
- If the materials do not cover the question, say so plainly and help from general
  engineering knowledge.
- Prefer concrete numbers, worked scenarios and real engineering applications.

FORMATTING
- Inline math uses $...$ and display math uses $$...$$ on separate lines.
- Lists use HTML <ul>/<ol> with <li> items.
- Diagrams use Mermaid syntax inside <Artefact>...</Artefact> tags with quoted labels.

PRACTICE
After a few exchanges on one topic, offer an apply-level multiple choice practice
question with concrete values, then keep guiding with questions rather than
revealing the answer."""

INITIAL_ASSISTANT_MESSAGE = (
    "Hello! I'm EngE-AI, your virtual engineering tutor. I'm here to help you work "
    "through engineering concepts and problems using guided thinking rather than just "
    "giving you the answers. What would you like to work on today?"
)

RAG_CONTEXT_SEPARATOR = "\n\n---\n\n"

STUDENT_QUESTION_MARKER = "Student's question:"

RAG_BRIDGE_PROMPT = f"""Based on the course materials and context provided above, help the student using the Socratic method.

1. Ask ONLY ONE question in your response.
2. Cite the specific chapter or section the information comes from.
3. Build on what the student has already said and acknowledge what they got right.
4. Use examples and data from the materials, framed as questions that lead to discovery.

{STUDENT_QUESTION_MARKER}"""

STRUGGLE_ANALYSIS_PROMPT = """Analyze the following exchange between a student and an AI tutor and decide
whether the student is struggling with a specific topic or concept.

Signs of struggle:
- repeated questions or requests for clarification on the same concept
- confusion or incorrect reasoning about a concept
- the student explicitly saying they find something hard

Topics already on file for this student:
{existing_topics}

Rules:
- Name AT MOST ONE topic, as a concise phrase of 1-3 words.
- If the topic is the same as, a paraphrase of, a substring of, or contains any topic
  already on file, treat it as a duplicate and return nothing.
- If there is no clear struggle, return nothing.

Respond in JSON format:
{{"struggle_topics": ["topic"]}}
or, when there is nothing new:
{{"struggle_topics": []}}

Conversation:
{conversation}"""


def format_rag_prompt(context: str, user_message: str) -> str:
    """Place the retrieved context block before the student's question."""
    return f"{context}{RAG_CONTEXT_SEPARATOR}{RAG_BRIDGE_PROMPT}{user_message}"


def strip_course_materials(text: str) -> str:
    """
    Recover the student's own words from a RAG-augmented user turn.

    Plain user turns are returned unchanged (trimmed).
    """
    if COURSE_MATERIALS_OPEN not in text and STUDENT_QUESTION_MARKER not in text:
        return text.strip()

    cleaned = re.sub(
        re.escape(COURSE_MATERIALS_OPEN) + r"[\s\S]*?" + re.escape(COURSE_MATERIALS_CLOSE),
        "",
        text,
    )
    marker_index = cleaned.find(STUDENT_QUESTION_MARKER)
    if marker_index != -1:
        cleaned = cleaned[marker_index + len(STUDENT_QUESTION_MARKER):]
    return cleaned.replace(RAG_CONTEXT_SEPARATOR, "").strip()


def format_struggle_words_prompt(struggle_words: Sequence[str]) -> str:
    if not struggle_words:
        return ""

    topics = ", ".join(struggle_words)
    return (
        f"\n\nStudent struggles with: {topics}"
        f"\n\nIMPORTANT: When the student asks about any of these topics ({topics}), "
        "stop using Socratic questioning and explain directly instead. The student has "
        "already shown difficulty with these topics and needs clear guidance."
        "\n\n- Give clear, step-by-step explanations"
        "\n- Include at least one concrete worked example with specific numbers"
        "\n- Break complex ideas into simpler parts"
        "\n- You may finish with ONE question to check understanding"
    )


def get_system_prompt(
    course_name: Optional[str] = None,
    learning_objectives: Optional[Sequence[LearningObjective]] = None,
    struggle_words: Optional[Sequence[str]] = None,
) -> str:
    """Build the system message that seeds every chat session."""
    prompt = SYSTEM_PROMPT

    if course_name:
        prompt += f"\n\nYou are currently helping with: {course_name}"

    if learning_objectives:
        lines = [
            f"{index}. [{objective.topic_or_week_title} - {objective.item_title}]: "
            f"{objective.learning_objective}"
            for index, objective in enumerate(learning_objectives, 1)
        ]
        prompt += (
            "\n\n<course_learning_objectives>\n"
            "The following are ALL learning objectives for this course, organized by week/topic and item:\n\n"
            + "\n".join(lines)
            + "\n</course_learning_objectives>\n"
            "\nWhen helping students, reference these learning objectives to keep answers aligned with course goals."
        )

    if struggle_words:
        prompt += format_struggle_words_prompt(struggle_words)

    return prompt


def get_initial_assistant_message(student_name: Optional[str] = None) -> str:
    if student_name:
        return f"Hello {student_name}! {INITIAL_ASSISTANT_MESSAGE}"
    return INITIAL_ASSISTANT_MESSAGE


def build_struggle_analysis_prompt(conversation: str, existing_topics: Iterable[str]) -> str:
    existing = list(existing_topics)
    return STRUGGLE_ANALYSIS_PROMPT.format(
        existing_topics=json.dumps(existing) if existing else "None",
        conversation=conversation,
    )


def parse_struggle_topics(response_text: str) -> List[str]:
    """
    Parse the analyzer's answer.

    Accepts a JSON object (possibly wrapped in prose or a code fence) or a
    bare comma-separated list. Returns trimmed, lower-cased, unique topics.
    """
    text = (response_text or "").strip()
    if not text:
        return []

    raw_topics: List[str] = []
    json_match = re.search(r"\{[^{}]*\}", text, re.DOTALL)
    if json_match:
        try:
            parsed = json.loads(json_match.group())
            topics = parsed.get("struggle_topics", [])
            if isinstance(topics, str):
                topics = [topics]
            raw_topics = [str(topic) for topic in topics]
        except (json.JSONDecodeError, AttributeError):
            raw_topics = text.split(",")
    else:
        raw_topics = text.strip("\"'`").split(",")

    seen: List[str] = []
    for topic in raw_topics:
        normalized = topic.strip().strip("\"'`.").strip().lower()
        if normalized and normalized not in ("none", "n/a") and normalized not in seen:
            seen.append(normalized)
    return seen
