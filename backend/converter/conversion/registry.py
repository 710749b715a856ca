"""Format/engine registry: which engine converts which format pair, and within what limits."""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Optional

from converter import config
from converter.conversion.errors import NotSupportedError
from converter.conversion.models import OPTION_FIELDS, EngineKind

logger = logging.getLogger("converter.registry")

QUALITIES = ("high", "medium", "low")
RESOLUTIONS = ("original", "4k", "1080p", "720p", "480p")
FRAMERATES = ("original", "60", "30", "25", "24", "15", "10")


def normalise_option_value(value: object) -> str:
    """Option values are compared as lower-case strings; 30, 30.0 and "30" are the same framerate."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip().lower()


FFMPEG_INPUTS = (
    "mp4", "avi", "mov", "mkv", "wmv", "flv", "webm", "m4v", "3gp", "ogv", "ts", "mts",
    "m2ts", "mpg", "mpeg", "vob", "asf", "mxf", "gif", "apng",
    "mp3", "wav", "aac", "flac", "ogg", "m4a", "opus", "wma", "aiff",
)
FFMPEG_OUTPUTS = (
    "mp4", "avi", "mov", "mkv", "wmv", "flv", "webm", "m4v", "3gp", "ogv", "ts", "mpg", "mpeg",
    "gif", "webp", "mp3", "aac", "wav", "flac", "ogg", "m4a", "opus",
)

# office document families; a document converts within its family
DOCUMENT_TYPES = {
    "writer": ("doc", "docx", "odt", "rtf", "txt", "html", "htm"),
    "calc": ("xls", "xlsx", "ods", "csv"),
    "impress": ("ppt", "pptx", "odp"),
    "draw": ("odg",),
}
LIBREOFFICE_INPUTS = tuple(fmt for formats in DOCUMENT_TYPES.values() for fmt in formats)
LIBREOFFICE_OUTPUTS = ("pdf", "docx", "odt", "xlsx", "ods", "pptx", "odp", "txt", "rtf", "html", "png", "jpg")
# any document can become a PDF, a first-page image or text
LIBREOFFICE_UNIVERSAL_OUTPUTS = frozenset({"pdf", "png", "jpg", "txt", "rtf", "html"})

IMAGEMAGICK_INPUTS = (
    "jpg", "jpeg", "png", "gif", "bmp", "tiff", "tif", "webp", "ico", "psd", "svg", "eps",
    "heic", "heif", "avif", "pdf",
)
IMAGEMAGICK_OUTPUTS = ("jpg", "jpeg", "png", "gif", "bmp", "tiff", "webp", "ico", "pdf", "avif")
_RASTER_TARGETS = ("png", "jpg", "jpeg", "tiff", "webp")
IMAGEMAGICK_PAIR_OUTPUTS = {
    **{fmt: frozenset(_RASTER_TARGETS + ("pdf",)) for fmt in ("psd", "svg", "eps")},
    "pdf": frozenset(_RASTER_TARGETS + ("gif",)),
    **{fmt: frozenset(_RASTER_TARGETS) for fmt in ("heic", "heif")},
}


def document_type(fmt: str) -> Optional[str]:
    for family, formats in DOCUMENT_TYPES.items():
        if fmt in formats:
            return family
    return None


def libreoffice_pair_outputs() -> dict[str, frozenset[str]]:
    """Outputs per input: same family, anything in LIBREOFFICE_UNIVERSAL_OUTPUTS, and writer documents into slides."""
    rules = {}
    for family, formats in DOCUMENT_TYPES.items():
        targets = set(LIBREOFFICE_UNIVERSAL_OUTPUTS)
        targets.update(f for f in LIBREOFFICE_OUTPUTS if document_type(f) == family)
        if family == "writer":
            targets.update(f for f in LIBREOFFICE_OUTPUTS if document_type(f) == "impress")
        for fmt in formats:
            rules[fmt] = frozenset(targets)
    return rules


CLOUDCONVERT_INPUTS = (
    # document
    "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "rtf", "csv", "html", "md",
    "odt", "ods", "odp", "epub",
    # image
    "jpg", "jpeg", "png", "gif", "bmp", "tiff", "webp", "svg", "ico", "psd", "heic", "heif", "avif",
    # video
    "mp4", "avi", "mov", "wmv", "flv", "mkv", "webm", "m4v", "3gp", "ogv", "mpeg", "mpg", "m2ts",
    "mts", "ts", "vob", "mxf",
    # audio
    "mp3", "wav", "aac", "flac", "ogg", "wma", "m4a", "opus", "aiff", "amr",
)
CLOUDCONVERT_OUTPUTS = (
    "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "rtf", "csv", "html", "odt", "epub",
    "jpg", "jpeg", "png", "gif", "bmp", "tiff", "webp", "ico", "heic", "avif",
    "mp4", "avi", "mov", "wmv", "flv", "mkv", "webm", "m4v", "3gp", "ogv", "mpeg", "mpg",
    "mp3", "wav", "aac", "flac", "ogg", "wma", "m4a", "opus", "aiff",
)


@dataclass(frozen=True)
class EngineCapabilities:
    engine_id: str
    kind: EngineKind
    priority: int
    input_formats: frozenset[str]
    output_formats: frozenset[str]
    max_file_size: int
    allowed_qualities: tuple[str, ...] = ()
    allowed_resolutions: tuple[str, ...] = ()
    allowed_framerates: tuple[str, ...] = ()
    defaults: Mapping[str, str] = field(default_factory=dict)
    timeout: int = 600
    # narrows output_formats for specific inputs
    pair_outputs: Mapping[str, frozenset[str]] = field(default_factory=dict)

    def allowed_values(self, key: str) -> tuple[str, ...]:
        """Allow-list for an API option key (videoQuality, resolution, framerate)."""
        return {
            "videoQuality": self.allowed_qualities,
            "resolution": self.allowed_resolutions,
            "framerate": self.allowed_framerates,
        }.get(key, ())

    def supports_pair(self, input_format: str, output_format: str) -> bool:
        if input_format not in self.input_formats or output_format not in self.output_formats:
            return False
        allowed = self.pair_outputs.get(input_format)
        return allowed is None or output_format in allowed

    def covers(self, options: Optional[Mapping[str, object]], file_size: Optional[int]) -> bool:
        if file_size is not None and file_size > self.max_file_size:
            return False
        for key, value in (options or {}).items():
            # unknown keys are rejected by the validator, not here
            if value is None or key not in OPTION_FIELDS:
                continue
            if normalise_option_value(value) not in self.allowed_values(key):
                return False
        return True

    def to_dict(self) -> dict:
        data = {
            "engine": self.engine_id,
            "kind": self.kind.value,
            "priority": self.priority,
            "input_formats": sorted(self.input_formats),
            "output_formats": sorted(self.output_formats),
            "max_file_size": self.max_file_size,
            "allowed_qualities": list(self.allowed_qualities),
            "allowed_resolutions": list(self.allowed_resolutions),
            "allowed_framerates": list(self.allowed_framerates),
            "defaults": dict(self.defaults),
            "timeout": self.timeout,
        }
        if self.pair_outputs:
            data["pair_outputs"] = {fmt: sorted(outputs) for fmt, outputs in sorted(self.pair_outputs.items())}
        return data

    @classmethod
    def from_dict(cls, data: Mapping) -> "EngineCapabilities":
        engine_id = data["engine"]
        unknown = set(data.get("defaults", {})) - set(OPTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown default option(s) for {engine_id}: {', '.join(sorted(unknown))}")
        framerates = _allow_list(data, "allowed_framerates")
        for rate in framerates:
            if rate != "original" and not _is_positive_number(rate):
                raise ValueError(f"Invalid framerate {rate!r} for {engine_id}")
        return cls(
            engine_id=engine_id,
            kind=EngineKind(data.get("kind", "local")),
            priority=int(data.get("priority", 100)),
            input_formats=frozenset(f.lower() for f in data["input_formats"]),
            output_formats=frozenset(f.lower() for f in data["output_formats"]),
            max_file_size=int(data["max_file_size"]),
            allowed_qualities=_allow_list(data, "allowed_qualities"),
            allowed_resolutions=_allow_list(data, "allowed_resolutions"),
            allowed_framerates=framerates,
            defaults={k: normalise_option_value(v) for k, v in data.get("defaults", {}).items()},
            timeout=int(data.get("timeout", 600)),
            pair_outputs={
                fmt.lower(): frozenset(o.lower() for o in outputs)
                for fmt, outputs in data.get("pair_outputs", {}).items()
            },
        )


def _allow_list(data: Mapping, key: str) -> tuple[str, ...]:
    return tuple(normalise_option_value(v) for v in data.get(key, ()))


def _is_positive_number(value: str) -> bool:
    try:
        return float(value) > 0
    except ValueError:
        return False


class EngineRegistry:
    """Read-only table of engines. Resolution picks the first engine (by priority) covering the request."""

    def __init__(
        self,
        engines: Iterable[EngineCapabilities],
        overrides: Optional[Mapping[tuple[str, str], str]] = None,
    ):
        ordered = list(engines)
        # sorted() is stable, so equal priorities keep declaration order
        self._engines = sorted(ordered, key=lambda e: e.priority)
        self._by_id = {e.engine_id: e for e in self._engines}
        if len(self._by_id) != len(ordered):
            raise ValueError("Duplicate engine id in registry")
        self._overrides = dict(overrides or {})
        for pair, engine_id in self._overrides.items():
            if engine_id not in self._by_id:
                raise ValueError(f"Override {pair[0]}->{pair[1]} names unknown engine {engine_id}")

    def engines(self) -> list[EngineCapabilities]:
        return list(self._engines)

    def get_capabilities(self, engine_id: str) -> EngineCapabilities:
        caps = self._by_id.get(engine_id)
        if caps is None:
            raise NotSupportedError(f"Unknown engine: {engine_id}")
        return caps

    def resolve_engine(
        self,
        input_format: str,
        output_format: str,
        options: Optional[Mapping[str, object]] = None,
        file_size: Optional[int] = None,
    ) -> str:
        input_format = input_format.lower()
        output_format = output_format.lower()
        candidates = [
            e for e in self._engines
            if e.supports_pair(input_format, output_format) and e.covers(options, file_size)
        ]
        if not candidates:
            raise NotSupportedError(f"No engine converts {input_format} -> {output_format} with the requested options")
        preferred = self._overrides.get((input_format, output_format))
        for caps in candidates:
            if caps.engine_id == preferred:
                return caps.engine_id
        return candidates[0].engine_id

    @classmethod
    def from_dict(cls, data: Mapping) -> "EngineRegistry":
        engines = [EngineCapabilities.from_dict(e) for e in data.get("engines", [])]
        overrides = {
            (o["input_format"].lower(), o["output_format"].lower()): o["engine"]
            for o in data.get("overrides", [])
        }
        return cls(engines, overrides)

    @classmethod
    def from_file(cls, path: Path) -> "EngineRegistry":
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        registry = cls.from_dict(data)
        logger.info("Loaded engine registry from %s (%s engines)", path, len(registry.engines()))
        return registry


def builtin_engines() -> list[EngineCapabilities]:
    video_defaults = {"videoQuality": "medium", "resolution": "original", "framerate": "original"}
    return [
        EngineCapabilities(
            engine_id="ffmpeg",
            kind=EngineKind.LOCAL,
            priority=10,
            input_formats=frozenset(FFMPEG_INPUTS),
            output_formats=frozenset(FFMPEG_OUTPUTS),
            max_file_size=config.FFMPEG_MAX_FILE_SIZE_BYTES,
            allowed_qualities=QUALITIES,
            allowed_resolutions=RESOLUTIONS,
            allowed_framerates=FRAMERATES,
            defaults=video_defaults,
            timeout=config.FFMPEG_TIMEOUT,
        ),
        EngineCapabilities(
            engine_id="imagemagick",
            kind=EngineKind.LOCAL,
            priority=15,
            input_formats=frozenset(IMAGEMAGICK_INPUTS),
            output_formats=frozenset(IMAGEMAGICK_OUTPUTS),
            max_file_size=config.IMAGEMAGICK_MAX_FILE_SIZE_BYTES,
            allowed_qualities=QUALITIES,
            allowed_resolutions=RESOLUTIONS,
            defaults={"videoQuality": "medium", "resolution": "original"},
            timeout=config.IMAGEMAGICK_TIMEOUT,
            pair_outputs=IMAGEMAGICK_PAIR_OUTPUTS,
        ),
        EngineCapabilities(
            engine_id="libreoffice",
            kind=EngineKind.LOCAL,
            priority=15,
            input_formats=frozenset(LIBREOFFICE_INPUTS),
            output_formats=frozenset(LIBREOFFICE_OUTPUTS),
            max_file_size=config.LIBREOFFICE_MAX_FILE_SIZE_BYTES,
            timeout=config.LIBREOFFICE_TIMEOUT,
            pair_outputs=libreoffice_pair_outputs(),
        ),
        EngineCapabilities(
            engine_id="cloudconvert",
            kind=EngineKind.REMOTE,
            priority=20,
            input_formats=frozenset(CLOUDCONVERT_INPUTS),
            output_formats=frozenset(CLOUDCONVERT_OUTPUTS),
            max_file_size=config.CLOUDCONVERT_MAX_FILE_SIZE_BYTES,
            allowed_qualities=QUALITIES,
            allowed_resolutions=RESOLUTIONS,
            allowed_framerates=FRAMERATES,
            defaults=video_defaults,
            timeout=config.CLOUDCONVERT_TIMEOUT,
        ),
    ]


def default_registry() -> EngineRegistry:
    if config.REGISTRY_FILE:
        return EngineRegistry.from_file(Path(config.REGISTRY_FILE))
    return EngineRegistry(builtin_engines())
