"""Shell script builder used for dry-run script output and in-cluster jobs.

A `Script` renders with a bash shebang and strict evaluation flags. Scripts
are combined with `+` (run one after another) and `|` (pipe one into the
next):

```python
from kubit.script import Script

script = Script.from_tokens(["kubecfg", "show", "main.jsonnet"]) | Script.from_tokens(
    ["kubectl", "apply", "-f", "-"]
)
print(script)
```
"""

import shlex
from collections.abc import Iterable

__all__ = [
    "Script",
]

HEADER = "#!/bin/bash\nset -euo pipefail\n\n"
CONTINUATION = " \\\n    "


def quote(token: str) -> str:
    """Quote a token for the shell.

    Explicit variable references such as `${HOME}` are double quoted so they
    still expand, and redirections are passed through unquoted.
    """
    if token.startswith("${"):
        return f'"{token}"'
    if token.startswith(">"):
        return token
    return shlex.quote(token)


class Script:
    """A bash script assembled from commands."""

    def __init__(self, body: str) -> None:
        """Initialize Script from an already formatted body."""
        self._body = body

    @classmethod
    def from_str(cls, body: str) -> "Script":
        """Create a script from a raw snippet, used verbatim."""
        return cls(body)

    @classmethod
    def from_tokens(cls, tokens: Iterable[str]) -> "Script":
        """Create a script running a single command, one argument per line."""
        return cls(CONTINUATION.join(quote(token) for token in tokens))

    @classmethod
    def join(cls, scripts: Iterable["Script"]) -> "Script":
        """Combine scripts so they run one after another."""
        result: Script | None = None
        for script in scripts:
            result = script if result is None else result + script
        return result if result is not None else cls("")

    @property
    def body(self) -> str:
        """The script without the header."""
        return self._body

    def subshell(self) -> "Script":
        """Wrap the script in a subshell."""
        return Script(f"({self._body})")

    def __add__(self, other: "Script") -> "Script":
        return Script(f"{self._body}\n{other.body}")

    def __or__(self, other: "Script") -> "Script":
        return Script(f"{self._body} \\\n| {other.body}")

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Script) and other.body == self._body

    def __str__(self) -> str:
        return f"{HEADER}{self._body}"

    def __repr__(self) -> str:
        return f"Script({self._body!r})"
