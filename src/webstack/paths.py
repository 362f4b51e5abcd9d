from __future__ import annotations

import os
import pathlib
import subprocess

HERE = pathlib.Path(__file__).absolute().parent


def top() -> pathlib.Path:
    if "WEBSTACK_TOP" in os.environ:
        return pathlib.Path(os.environ["WEBSTACK_TOP"])

    return pathlib.Path(
        subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],  # noqa: S607
            text=True,
            capture_output=True,
            check=False,
        ).stdout.strip()
    )


class Paths:
    @property
    def root(self) -> pathlib.Path:
        """Return the stack configuration directory.

        This should always be set via the WEBSTACK_ROOT environment variable,
        either by the `webstack` CLI or by whoever runs `pulumi` directly.

        Raises:
            RuntimeError: If WEBSTACK_ROOT is not set in the environment

        """
        if "WEBSTACK_ROOT" not in os.environ:
            msg = "WEBSTACK_ROOT environment variable not set."
            raise RuntimeError(msg)

        return pathlib.Path(os.environ["WEBSTACK_ROOT"])

    @property
    def cache(self) -> pathlib.Path:
        if "WEBSTACK_CACHE" in os.environ:
            return pathlib.Path(os.environ["WEBSTACK_CACHE"])

        return top() / ".local"

    @property
    def stacks(self) -> pathlib.Path:
        return self.root / "__stacks__"

    @property
    def workspaces(self) -> pathlib.Path:
        return self.cache / "workspaces"
