from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import UnsupportedLanguage


class Language(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    CPP = "cpp"
    JAVA = "java"


@dataclass(frozen=True)
class LanguageConfig:
    """
    Toolchain for one language. Commands are argv templates, never shell strings:
    placeholders ``{source}``, ``{binary}``, ``{stem}`` and ``{workdir}`` are
    substituted inside each argument and user code never reaches an argv.
    """

    name: str
    extension: str
    run: Tuple[str, ...]
    compile: Optional[Tuple[str, ...]] = None
    source_name: str = ""
    input_markers: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()

    @property
    def filename(self) -> str:
        return self.source_name or f"code.{self.extension}"

    @property
    def needs_compile(self) -> bool:
        return bool(self.compile)

    def source_path(self, workdir: Path) -> Path:
        return workdir / self.filename

    def compile_argv(self, workdir: Path) -> Optional[List[str]]:
        if not self.compile:
            return None
        return self._render(self.compile, workdir)

    def run_argv(self, workdir: Path) -> List[str]:
        return self._render(self.run, workdir)

    def _render(self, template: Tuple[str, ...], workdir: Path) -> List[str]:
        stem = Path(self.filename).stem
        values = {
            "{source}": str(self.source_path(workdir)),
            "{binary}": str(workdir / stem),
            "{stem}": stem,
            "{workdir}": str(workdir),
        }
        argv = []
        for arg in template:
            for key, val in values.items():
                arg = arg.replace(key, val)
            argv.append(arg)
        return argv


DEFAULT_LANGUAGES: Mapping[Language, LanguageConfig] = MappingProxyType({
    Language.PYTHON: LanguageConfig(
        name="python",
        extension="py",
        run=("python3", "-u", "{source}"),
        input_markers=("input(",),
        aliases=("py", "python3"),
    ),
    Language.JAVASCRIPT: LanguageConfig(
        name="javascript",
        extension="js",
        run=("node", "{source}"),
        input_markers=("readline", "process.stdin"),
        aliases=("js", "node"),
    ),
    Language.CPP: LanguageConfig(
        name="cpp",
        extension="cpp",
        compile=("g++", "-o", "{binary}", "{source}"),
        run=("{binary}",),
        input_markers=("cin >>", "cin>>", "getline"),
        aliases=("c++", "cplusplus"),
    ),
    Language.JAVA: LanguageConfig(
        name="java",
        extension="java",
        source_name="Main.java",
        compile=("javac", "{source}"),
        run=("java", "-Xmx256m", "-cp", "{workdir}", "{stem}"),
        input_markers=("Scanner", "readLine"),
    ),
})


def _tuple(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _override(base: LanguageConfig, entry: Dict[str, Any]) -> LanguageConfig:
    changes: Dict[str, Any] = {}
    if "extension" in entry:
        changes["extension"] = str(entry["extension"]).lstrip(".")
    if "source_name" in entry:
        changes["source_name"] = str(entry["source_name"])
    if "run" in entry:
        changes["run"] = _tuple(entry["run"])
    if "compile" in entry:
        # an explicit null drops the compile step
        changes["compile"] = _tuple(entry["compile"]) if entry["compile"] else None
    if "input_markers" in entry:
        changes["input_markers"] = _tuple(entry["input_markers"])
    if "aliases" in entry:
        changes["aliases"] = _tuple(entry["aliases"])
    return replace(base, **changes)


class LanguageRegistry:
    """Read-only language -> toolchain mapping, frozen after construction."""

    def __init__(self, configs: Mapping[Language, LanguageConfig]):
        self._configs = MappingProxyType(dict(configs))
        aliases: Dict[str, Language] = {}
        for lang, cfg in self._configs.items():
            for alias in cfg.aliases:
                aliases[alias.lower()] = lang
        self._aliases = MappingProxyType(aliases)

    @classmethod
    def from_mapping(cls, overrides: Optional[Dict[str, Any]] = None) -> "LanguageRegistry":
        configs = dict(DEFAULT_LANGUAGES)
        for key, entry in (overrides or {}).items():
            try:
                lang = Language(str(key).lower())
            except ValueError:
                raise ValueError(f"unknown language in configuration: {key!r}") from None
            if not isinstance(entry, dict):
                raise ValueError(f"language entry {key!r} must be a mapping")
            configs[lang] = _override(configs[lang], entry)
        return cls(configs)

    def resolve(self, language: str) -> LanguageConfig:
        key = (language or "").strip().lower()
        key = self._aliases.get(key, key)
        try:
            lang = Language(key)
        except ValueError:
            raise UnsupportedLanguage(language) from None
        cfg = self._configs.get(lang)
        if cfg is None:
            raise UnsupportedLanguage(language)
        return cfg

    @property
    def supported(self) -> List[str]:
        return [lang.value for lang in self._configs]
