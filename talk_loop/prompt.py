"""
Dialogue prompt construction.

Resolution order for the template:
1) explicit prompt file (trailing newline dropped)
2) personas/<name>.yaml / .yml
3) personas/default.yaml
4) built-in DEFAULT_PROMPT

Personas are YAML and read with PyYAML's safe_load.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

CHAT_SYMBOL = ":"

DEFAULT_PROMPT = """Text transcript of a never ending dialog, where {0} interacts with an AI assistant named {1}.
{1} is helpful, kind, honest, friendly, good at writing and never fails to answer {0}'s requests immediately and with details and precision.
There are no annotations like (30 seconds passed...) or (to himself), just what {0} and {1} say aloud to each other.
The transcript only includes text, it does not include markup like HTML and Markdown.
{1} responds with short and concise answers.

{0}{4} Hello, {1}!
{1}{4} Hello {0}! How may I help you today?
{0}{4} What time is it?
{1}{4} It is {2} o'clock.
{0}{4} What year is it?
{1}{4} We are in {3}.
{0}{4} What is a cat?
{1}{4} A cat is a domestic species of small carnivorous mammal. It is the only domesticated species in the family Felidae.
{0}{4} Name a color.
{1}{4} Blue
{0}{4}"""


def _get_personas_dir() -> Path:
    return Path(__file__).parent / "personas"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"Persona file {path} must contain a mapping at top-level", path=str(path))
    return data


def load_persona(name: str) -> Dict[str, Any]:
    personas_dir = _get_personas_dir()
    for candidate in (personas_dir / f"{name}.yaml", personas_dir / f"{name}.yml"):
        if candidate.exists():
            return _load_file(candidate)

    default = personas_dir / "default.yaml"
    if default.exists():
        return _load_file(default)

    return {"name": "default", "prompt": DEFAULT_PROMPT}


def load_template(prompt_file: Optional[str] = None, persona: str = "default") -> str:
    if prompt_file:
        try:
            with open(prompt_file, encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise ConfigError(f"Cannot read prompt file: {e}", path=prompt_file)
        if text.endswith("\n"):
            text = text[:-1]
        return text

    return load_persona(persona).get("prompt", DEFAULT_PROMPT)


def build_prompt(
    template: str,
    person: str,
    bot_name: str,
    now: Optional[datetime] = None,
) -> str:
    """Fill the template placeholders. The result starts with a space."""
    now = now or datetime.now()
    prompt = " " + template
    prompt = prompt.replace("{0}", person)
    prompt = prompt.replace("{1}", bot_name)
    prompt = prompt.replace("{2}", now.strftime("%H:%M"))
    prompt = prompt.replace("{3}", now.strftime("%Y"))
    prompt = prompt.replace("{4}", CHAT_SYMBOL)
    return prompt


def antiprompts_for(person: str) -> List[str]:
    """The user's speaker tag ends the bot's turn."""
    return [person + CHAT_SYMBOL]


def format_user_turn(text: str, bot_name: str) -> str:
    return " " + text + "\n" + bot_name + CHAT_SYMBOL
