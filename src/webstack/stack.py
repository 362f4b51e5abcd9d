import pathlib
import typing
import warnings
from abc import ABC, abstractmethod

import deepmerge  # type: ignore
import yaml

import webstack
import webstack.paths


class AbstractStack(ABC):
    d: pathlib.Path
    cfg: webstack.StackConfig
    spec: dict[str, typing.Any]

    def __init__(self, name: str, paths: webstack.paths.Paths | None = None, *, load_yaml=True):
        self.d = (paths or webstack.paths.Paths()).stacks / name

        if not load_yaml:
            return

        if not self.stack_yaml.exists():
            msg = f"no stack config found at {str(self.stack_yaml)!r}"
            raise ValueError(msg)

        self._load_common_config()
        self.load_unique_config()

    @abstractmethod
    def load_unique_config(self) -> None:
        pass

    @property
    @abstractmethod
    def cloud_provider(self) -> webstack.CloudProvider:
        pass

    @property
    @abstractmethod
    def required_tags(self) -> dict[str, str]:
        pass

    @property
    def stack_yaml(self) -> pathlib.Path:
        return self.d / "webstack.yaml"

    @property
    def name(self) -> str:
        return self.d.name

    @property
    def compound_name(self) -> str:
        return f"{self.cfg.true_name}-{self.cfg.environment}"

    @property
    def prefix(self) -> str:
        return webstack.STATE_BUCKET_PREFIX

    def read_stack_yaml(self) -> dict[str, typing.Any]:
        cfg_dict = yaml.safe_load(self.stack_yaml.read_text()) or {}
        if not isinstance(cfg_dict, dict):
            msg = f"stack config in {str(self.stack_yaml)!r} must be a mapping, got {type(cfg_dict).__name__}"
            raise ValueError(msg)
        return cfg_dict

    def _load_common_config(self) -> None:
        if "-" not in self.d.name:
            msg = f"Stack name {self.d.name!r} must be of the form <name>-<environment>"
            raise ValueError(msg)

        true_name, environment = self.d.name.rsplit("-", maxsplit=1)

        if environment not in {e.value for e in webstack.Environments}:
            msg = f"Environment {environment!r} is not supported"
            raise ValueError(msg)

        spec: dict[str, typing.Any] = {
            "environment": environment,
            "true_name": true_name,
        }

        cfg_dict = self.read_stack_yaml()
        cfg_spec = cfg_dict.get("spec") or {}
        if not isinstance(cfg_spec, dict):
            msg = f"'spec' in {str(self.stack_yaml)!r} must be a mapping"
            raise ValueError(msg)

        for key in list(cfg_spec.keys()):
            cfg_spec[key.replace("-", "_")] = cfg_spec.pop(key)

        for key in ("environment", "true_name"):
            if key in cfg_spec:
                warnings.warn(
                    f"'spec.{key}' found in stack config; it is derived from the directory name and will be ignored",
                    stacklevel=2,
                )
                cfg_spec.pop(key)

        deepmerge.always_merger.merge(spec, cfg_spec)

        self.spec = spec

    def site_names(self) -> list[str]:
        return sorted(self.cfg.sites.keys())
