#!/usr/bin/env python3
"""
Greeting Message Renderer

Produces greeting text from a template and a subject name. Names are
stripped of angle brackets before substitution; this keeps stray markup
out of the message but is not a full escaping scheme.
"""

import math
import random
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

PLACEHOLDER = "{{name}}"
SMS_SEGMENT_LENGTH = 160

DEFAULT_TEMPLATES = [
    "Happy Birthday, {{name}}! Wishing you a day full of joy, laughter and everything that makes you smile.",
    "It's your day, {{name}}! Hope this birthday brings you plenty of happiness and a few good surprises.",
    "Happy Birthday, {{name}}! Here's to celebrating you today and to a great year ahead.",
    "Warmest birthday wishes, {{name}}! May the coming year be your best one yet.",
    "Happy Birthday, {{name}}! Another trip around the sun starts today. Enjoy the cake!",
]


@dataclass
class MessagePreview:
    """Rendered text plus its SMS sizing"""
    text: str
    char_count: int
    sms_segments: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sanitize_name(name: str) -> str:
    return name.replace('<', '').replace('>', '').strip()


def render_message(name: str, template: Optional[str] = None,
                   templates: Sequence[str] = DEFAULT_TEMPLATES,
                   rng: Optional[random.Random] = None) -> str:
    """
    Render a greeting for ``name``.

    When no template is given one is picked uniformly at random from
    ``templates``. Every placeholder occurrence is replaced.
    """
    if template is None:
        if not templates:
            raise ValueError("At least one message template is required")
        template = (rng or random).choice(list(templates))
    return template.replace(PLACEHOLDER, sanitize_name(name))


class MessageRenderer:
    """Template renderer bound to a configured template set"""

    def __init__(self, templates: Optional[List[str]] = None, rng: Optional[random.Random] = None):
        self.templates = list(templates) if templates else list(DEFAULT_TEMPLATES)
        self.rng = rng or random.Random()

    def render(self, name: str, template: Optional[str] = None) -> str:
        return render_message(name, template, self.templates, self.rng)

    def preview(self, name: str, template: Optional[str] = None) -> MessagePreview:
        text = self.render(name, template)
        return MessagePreview(
            text=text,
            char_count=len(text),
            sms_segments=math.ceil(len(text) / SMS_SEGMENT_LENGTH),
        )
