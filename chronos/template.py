"""
Argument templating for task commands.

Task arguments may contain template actions that are rendered right
before each execution attempt. Four functions are available:

    {{env "KEY"}}        value of KEY in the task's effective environment
    {{name}}             the task name
    {{time "%Y-%m-%d"}}  the current local time, formatted with strftime
    {{count}}            1 + the number of successful executions so far

The terse action syntax above is rewritten into Jinja2 call expressions,
so the equivalent Jinja2 form (``{{ env("KEY") }}``) works as well.
Rendering runs in a sandboxed Jinja2 environment with strict undefined
handling: an unknown function or malformed action is an error.

Only ``{{ ... }}`` actions are evaluated. Jinja2 statement and comment
openers (``{%``, ``{#``) in an argument are escaped and come out as
literal text.
"""

import logging
import re
from datetime import datetime
from typing import Callable, Dict, List, Optional

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from chronos.config import ChronosError

logger = logging.getLogger(__name__)

TEMPLATE_FUNCTIONS = ("env", "name", "time", "count")

# {{func "arg" ...}} with optional whitespace-trim markers
_ACTION_RE = re.compile(
    r'\{\{(?P<ltrim>-?)\s*(?P<func>[A-Za-z_]\w*)'
    r'(?P<args>(?:\s+"(?:[^"\\]|\\.)*")*)'
    r'\s*(?P<rtrim>-?)\}\}'
)
_STRING_ARG_RE = re.compile(r'"(?:[^"\\]|\\.)*"')
# {% and {# outside of an action
_BLOCK_OPEN_RE = re.compile(r'\{\{.*?\}\}|\{[%#]', re.DOTALL)

_jinja_env = SandboxedEnvironment(
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


class TemplateRenderError(ChronosError):
    """Raised when an argument template cannot be parsed or rendered."""


def translate_actions(text: str) -> str:
    """
    Rewrite ``{{func "arg"}}`` actions into Jinja2 call expressions.

    Only the known template functions are rewritten; anything else is
    left for Jinja2 to parse (and reject, if it is not valid there).
    """
    def replace(match: re.Match) -> str:
        func = match.group('func')
        if func not in TEMPLATE_FUNCTIONS:
            return match.group(0)
        args = ", ".join(_STRING_ARG_RE.findall(match.group('args')))
        ltrim = "-" if match.group('ltrim') else ""
        rtrim = "-" if match.group('rtrim') else ""
        return f"{{{{{ltrim} {func}({args}) {rtrim}}}}}"

    return _ACTION_RE.sub(replace, text)


def escape_block_delimiters(text: str) -> str:
    """Turn ``{%`` and ``{#`` outside of actions into literal output."""
    def replace(match: re.Match) -> str:
        token = match.group(0)
        if token.startswith('{{'):
            return token
        return f"{{{{ '{token}' }}}}"

    return _BLOCK_OPEN_RE.sub(replace, text)


class ArgTemplateEngine:
    """
    Renders task arguments for one execution attempt.

    Args:
        name: Task name, returned by ``name()``
        env: Effective environment of the attempt, read by ``env(key)``
        count: Callable returning the value of ``count()``
        clock: Returns the current time (defaults to local wall-clock time)
    """

    def __init__(
        self,
        name: str,
        env: Dict[str, str],
        count: Callable[[], int],
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.name = name
        self.env = env
        self._count = count
        self._clock = clock or (lambda: datetime.now().astimezone())

    def functions(self) -> Dict[str, Callable]:
        """Template functions exposed to argument templates."""
        return {
            'env': lambda key: self.env.get(key, ""),
            'name': lambda: self.name,
            'time': lambda layout: self._clock().strftime(layout),
            'count': self._count,
        }

    def render(self, text: str) -> str:
        """
        Render a single argument.

        Raises:
            TemplateRenderError: If the template is malformed or fails to render
        """
        try:
            template = _jinja_env.from_string(translate_actions(escape_block_delimiters(text)))
            return template.render(**self.functions())
        except (TemplateError, TypeError, ValueError) as e:
            raise TemplateRenderError(
                f"failed to apply template. templateText: {text}, err: {e}"
            ) from e

    def render_args(self, args: List[str]) -> List[str]:
        """Render every argument, returning a new list."""
        rendered = []
        for arg in args:
            value = self.render(arg)
            logger.debug(f"transform args. before: {arg}, after: {value}")
            rendered.append(value)
        return rendered
