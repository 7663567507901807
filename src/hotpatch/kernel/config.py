"""
Patch Manager Configuration - Timeouts, retry policy and kernel paths.

Loaded from YAML config file with environment variable override support.
"""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_CONFIG_PATH = Path("/etc/hotpatch/config.yaml")


def _default_core_candidates() -> list[str]:
    # "{script_dir}" and "{release}" are expanded at lookup time
    return [
        "{script_dir}/../kmod/core/kpatch.ko",
        "/usr/local/lib/kpatch/{release}/kpatch.ko",
        "/usr/lib/kpatch/{release}/kpatch.ko",
        "/usr/local/lib/modules/{release}/extra/kpatch/kpatch.ko",
        "/usr/lib/modules/{release}/extra/kpatch/kpatch.ko",
    ]


@dataclass
class TimeoutsConfig:
    """Bounded waits, in seconds."""

    post_enable_wait: int = 15
    post_signal_wait: int = 60
    module_ref_wait: int = 15
    poll_interval: float = 1.0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Every wait must stay bounded: polling needs a positive interval."""
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        for name in ("post_enable_wait", "post_signal_wait", "module_ref_wait"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must not be negative, got {value}")


@dataclass
class RetryConfig:
    """Backoff for operations racing the activeness safety check."""

    max_load_attempts: int = 5
    retry_interval: float = 2.0
    busy_marker: str = "Device or resource busy"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.retry_interval < 0:
            raise ValueError(f"retry_interval must not be negative, got {self.retry_interval}")
        if self.max_load_attempts < 1:
            raise ValueError(f"max_load_attempts must be at least 1, got {self.max_load_attempts}")


@dataclass
class PathsConfig:
    """Kernel-exposed filesystem roots. Overridable for tests and chroots."""

    livepatch_root: Path = field(default_factory=lambda: Path("/sys/kernel/livepatch"))
    kpatch_root: Path = field(default_factory=lambda: Path("/sys/kernel/kpatch"))
    sys_module_root: Path = field(default_factory=lambda: Path("/sys/module"))
    proc_root: Path = field(default_factory=lambda: Path("/proc"))
    kallsyms: Path = field(default_factory=lambda: Path("/proc/kallsyms"))


@dataclass
class CoreConfig:
    """How to activate the patch core when none is loaded."""

    module_name: str = "kpatch"
    candidates: list[str] = field(default_factory=_default_core_candidates)
    script_dir: Path = field(default_factory=lambda: Path(__file__).resolve().parent)


@dataclass
class PatchConfig:
    """Main configuration."""

    install_dir: Path = field(default_factory=lambda: Path("/var/lib/kpatch"))
    kernel_release: str = field(default_factory=platform.release)
    config_path: Path = DEFAULT_CONFIG_PATH

    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    core: CoreConfig = field(default_factory=CoreConfig)

    @property
    def release_dir(self) -> Path:
        """Installed binaries for the running kernel."""
        return self.install_dir / self.kernel_release

    @classmethod
    def load(cls, config_path: Path | None = None) -> PatchConfig:
        """Load configuration from YAML file, then apply environment overrides."""
        config_path = config_path or DEFAULT_CONFIG_PATH
        data: dict[str, Any] = {}
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}

        config = cls.from_dict(data, config_path)
        config.apply_env(os.environ)
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> PatchConfig:
        """Create config from dictionary. Unknown keys are ignored."""
        data = dict(data or {})

        def _section(name: str) -> dict[str, Any]:
            value = data.get(name)
            return dict(value) if isinstance(value, dict) else {}

        def _filter_keys(src: dict[str, Any], allowed: set[str]) -> dict[str, Any]:
            return {k: v for k, v in src.items() if k in allowed}

        timeouts = _filter_keys(
            _section("timeouts"),
            {"post_enable_wait", "post_signal_wait", "module_ref_wait", "poll_interval"},
        )
        retry = _filter_keys(
            _section("retry"), {"max_load_attempts", "retry_interval", "busy_marker"}
        )
        paths = {
            k: Path(v)
            for k, v in _filter_keys(
                _section("paths"),
                {"livepatch_root", "kpatch_root", "sys_module_root", "proc_root", "kallsyms"},
            ).items()
        }
        core_data = _filter_keys(_section("core"), {"module_name", "candidates", "script_dir"})
        if "script_dir" in core_data:
            core_data["script_dir"] = Path(core_data["script_dir"])
        if "candidates" in core_data:
            core_data["candidates"] = [str(c) for c in core_data["candidates"] or []]

        config = cls(
            timeouts=TimeoutsConfig(**timeouts),
            retry=RetryConfig(**retry),
            paths=PathsConfig(**paths),
            core=CoreConfig(**core_data),
        )
        if data.get("install_dir"):
            config.install_dir = Path(data["install_dir"])
        if data.get("kernel_release"):
            config.kernel_release = str(data["kernel_release"])
        if config_path:
            config.config_path = config_path

        return config

    def apply_env(self, environ: Mapping[str, str]) -> None:
        """Apply HOTPATCH_* environment overrides."""
        if environ.get("HOTPATCH_INSTALL_DIR"):
            self.install_dir = Path(environ["HOTPATCH_INSTALL_DIR"])

        int_overrides = {
            "HOTPATCH_POST_ENABLE_WAIT": (self.timeouts, "post_enable_wait"),
            "HOTPATCH_POST_SIGNAL_WAIT": (self.timeouts, "post_signal_wait"),
            "HOTPATCH_MODULE_REF_WAIT": (self.timeouts, "module_ref_wait"),
            "HOTPATCH_MAX_LOAD_ATTEMPTS": (self.retry, "max_load_attempts"),
        }
        for env_name, (section, attr) in int_overrides.items():
            value = environ.get(env_name)
            if value:
                setattr(section, attr, int(value))

        if environ.get("HOTPATCH_RETRY_INTERVAL"):
            self.retry.retry_interval = float(environ["HOTPATCH_RETRY_INTERVAL"])
        self.validate()

    def validate(self) -> None:
        """Re-check sections after in-place overrides."""
        self.timeouts.validate()
        self.retry.validate()

    def core_candidates(self) -> list[Path]:
        """Expand the ordered core module search list for the running kernel."""
        return [
            Path(c.format(script_dir=self.core.script_dir, release=self.kernel_release))
            for c in self.core.candidates
        ]

    def to_dict(self) -> dict[str, Any]:
        """Serialize config to dictionary."""
        return {
            "install_dir": str(self.install_dir),
            "kernel_release": self.kernel_release,
            "timeouts": {
                "post_enable_wait": self.timeouts.post_enable_wait,
                "post_signal_wait": self.timeouts.post_signal_wait,
                "module_ref_wait": self.timeouts.module_ref_wait,
                "poll_interval": self.timeouts.poll_interval,
            },
            "retry": {
                "max_load_attempts": self.retry.max_load_attempts,
                "retry_interval": self.retry.retry_interval,
                "busy_marker": self.retry.busy_marker,
            },
            "paths": {
                "livepatch_root": str(self.paths.livepatch_root),
                "kpatch_root": str(self.paths.kpatch_root),
                "sys_module_root": str(self.paths.sys_module_root),
                "proc_root": str(self.paths.proc_root),
                "kallsyms": str(self.paths.kallsyms),
            },
            "core": {
                "module_name": self.core.module_name,
                "candidates": list(self.core.candidates),
                "script_dir": str(self.core.script_dir),
            },
        }
