from __future__ import annotations

import hashlib
import json
import typing

import click


def print_steps(steps: list[tuple[str, typing.Any]]):
    click.secho(
        "∙ " + ("\n∙ ".join([name for name, _ in steps])) + "\n\n",
        fg="white",
        bold=True,
    )


def json_signature(obj: typing.Any) -> str:
    return hashlib.sha256(
        json.dumps(obj, sort_keys=True, default=str).encode(),
        usedforsecurity=False,
    ).hexdigest()


def octet_signature(s: str) -> int:
    return sum([ord(c) for c in list(s)]) % 255


def state_bucket_url(bucket: str, region: str) -> str:
    return f"s3://{bucket}?region={region}"
