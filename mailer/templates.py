"""
mailer/templates.py -- Jinja2 rendering of outbound email bodies.

Each email kind has a subject line plus <kind>.txt and <kind>.html templates
under mailer/templates/. HTML is autoescaped; StrictUndefined turns a
missing template variable into an error instead of an empty string, so a
caller that forgets `code` cannot send a reset email without one.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, select_autoescape

from auth.models import EMAIL_PASSWORD_RESET_CODE, EMAIL_WELCOME

SUBJECTS = {
    EMAIL_WELCOME: "Welcome to SessionGuard - Your Account Details",
    EMAIL_PASSWORD_RESET_CODE: "Password Reset Code - SessionGuard",
}

_env = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


def render(kind: str, template_data: dict[str, Any]) -> RenderedEmail:
    """Render subject, text and HTML bodies for an email kind.

    Raises ValueError for an unknown kind and jinja2.UndefinedError when
    template_data lacks a variable the template uses.
    """
    if kind not in SUBJECTS:
        raise ValueError(f"Unknown email kind: {kind!r}")
    try:
        text = _env.get_template(f"{kind}.txt").render(**template_data)
        html = _env.get_template(f"{kind}.html").render(**template_data)
    except TemplateNotFound as exc:
        raise ValueError(f"Missing template for email kind {kind!r}") from exc
    return RenderedEmail(subject=SUBJECTS[kind], text=text, html=html)
