"""Canned tutor replies for when a student says whether a struggle topic is resolved."""

import random
from typing import List

CONFIDENT_RESPONSES: List[str] = [
    "Great! Is there anything else I can help you with?",
    "Excellent! Feel free to ask if you have any other questions.",
    "Wonderful! Let me know if there's anything more you'd like to explore.",
    "That's fantastic! I'm here if you need help with anything else.",
    "Perfect! What else would you like to work on?",
    "Great to hear! Is there another topic you'd like to discuss?",
]

NEEDS_PRACTICE_RESPONSES: List[str] = [
    "No problem! Would you like to practice more with this topic?",
    "That's perfectly fine! Let's keep practicing. What would you like to focus on?",
    "I understand. Let's work through some more examples together. Which part should we start with?",
    "Of course! Let's dive deeper. What would you like to practice?",
    "No worries! I'm here to help you practice. What would you like to work on?",
]

ALREADY_RESOLVED_RESPONSES: List[str] = [
    "It looks like you've already mastered this topic. Thanks for learning with EngE-AI!",
]


def random_confident_response() -> str:
    return random.choice(CONFIDENT_RESPONSES)


def random_needs_practice_response() -> str:
    return random.choice(NEEDS_PRACTICE_RESPONSES)


def random_already_resolved_response() -> str:
    return random.choice(ALREADY_RESOLVED_RESPONSES)
