import json

import pytest

from conftest import make_caps
from converter.conversion.errors import NotSupportedError
from converter.conversion.models import EngineKind
from converter.conversion.registry import EngineCapabilities, EngineRegistry, builtin_engines

MB = 1024 * 1024


def test_resolve_picks_highest_priority_engine(registry):
    assert registry.resolve_engine("mov", "mp4") == "local"


def test_resolve_is_case_insensitive(registry):
    assert registry.resolve_engine("MOV", "MP4") == "local"


def test_resolve_skips_engine_that_cannot_handle_file_size(registry):
    assert registry.resolve_engine("mov", "mp4", file_size=50 * MB) == "remote"


def test_resolve_skips_engine_whose_allow_list_lacks_option():
    local = make_caps("local", allowed_resolutions=("original",))
    remote = make_caps("remote", priority=20)
    registry = EngineRegistry([local, remote])
    assert registry.resolve_engine("mov", "mp4", {"resolution": "1080p"}) == "remote"
    assert registry.resolve_engine("mov", "mp4", {"resolution": "original"}) == "local"


def test_resolve_matches_numeric_framerate(registry):
    assert registry.resolve_engine("mov", "mp4", {"framerate": 30}) == "local"


def test_resolve_unsupported_pair(registry):
    with pytest.raises(NotSupportedError):
        registry.resolve_engine("mov", "docx")


def test_resolve_only_remote_supports_pair(registry):
    assert registry.resolve_engine("docx", "pdf") == "remote"


def test_equal_priority_keeps_declaration_order():
    registry = EngineRegistry([make_caps("first", priority=5), make_caps("second", priority=5)])
    assert registry.resolve_engine("mov", "mp4") == "first"


def test_override_wins_among_candidates():
    registry = EngineRegistry(
        [make_caps("local"), make_caps("remote", priority=20)],
        overrides={("mov", "mp4"): "remote"},
    )
    assert registry.resolve_engine("mov", "mp4") == "remote"
    assert registry.resolve_engine("mkv", "mp4") == "local"


def test_override_ignored_when_engine_does_not_cover_request():
    registry = EngineRegistry(
        [make_caps("local", max_file_size=100 * MB), make_caps("remote", priority=20, max_file_size=MB)],
        overrides={("mov", "mp4"): "remote"},
    )
    assert registry.resolve_engine("mov", "mp4", file_size=5 * MB) == "local"


def test_duplicate_engine_ids_rejected():
    with pytest.raises(ValueError):
        EngineRegistry([make_caps("local"), make_caps("local")])


def test_override_for_unknown_engine_rejected():
    with pytest.raises(ValueError):
        EngineRegistry([make_caps("local")], overrides={("mov", "mp4"): "nope"})


def test_get_capabilities(registry):
    caps = registry.get_capabilities("remote")
    assert caps.kind == EngineKind.REMOTE
    assert caps.max_file_size == 100 * MB
    with pytest.raises(NotSupportedError):
        registry.get_capabilities("missing")


def test_capabilities_dict_round_trip():
    caps = make_caps("local")
    assert EngineCapabilities.from_dict(caps.to_dict()) == caps


def test_from_file(tmp_path):
    path = tmp_path / "engines.json"
    path.write_text(json.dumps({
        "engines": [
            {
                "engine": "ffmpeg",
                "kind": "local",
                "priority": 1,
                "input_formats": ["MOV"],
                "output_formats": ["mp4"],
                "max_file_size": 1000,
                "allowed_qualities": ["high"],
                "timeout": 5,
            },
        ],
        "overrides": [],
    }))
    registry = EngineRegistry.from_file(path)
    caps = registry.get_capabilities("ffmpeg")
    assert caps.input_formats == frozenset({"mov"})
    assert caps.allowed_qualities == ("high",)
    assert caps.timeout == 5


def test_unknown_default_option_rejected():
    data = make_caps("local").to_dict()
    data["defaults"] = {"bitrate": "1M"}
    with pytest.raises(ValueError):
        EngineCapabilities.from_dict(data)


def test_builtin_engines_prefer_local_engines():
    registry = EngineRegistry(builtin_engines())
    assert registry.resolve_engine("mov", "mp4") == "ffmpeg"
    assert registry.resolve_engine("docx", "pdf") == "libreoffice"
    assert registry.resolve_engine("xlsx", "ods") == "libreoffice"
    assert registry.resolve_engine("png", "webp") == "imagemagick"
    assert registry.resolve_engine("pdf", "png") == "imagemagick"
    assert registry.resolve_engine("gif", "mp4") == "ffmpeg"
    assert registry.resolve_engine("epub", "pdf") == "cloudconvert"


def test_builtin_engines_fall_back_to_remote_for_unsupported_options_or_size():
    registry = EngineRegistry(builtin_engines())
    # libreoffice has no option allow-lists
    assert registry.resolve_engine("docx", "pdf", {"videoQuality": "high"}) == "cloudconvert"
    # imagemagick has no framerate allow-list
    assert registry.resolve_engine("png", "webp", {"framerate": "30"}) == "cloudconvert"
    assert registry.resolve_engine("docx", "pdf", file_size=60 * MB) == "cloudconvert"


def test_pair_outputs_narrow_supported_pairs():
    caps = make_caps(pair_outputs={"wav": frozenset({"mp3"})})
    assert caps.supports_pair("wav", "mp3")
    assert not caps.supports_pair("wav", "mp4")
    # inputs without a rule keep every output
    assert caps.supports_pair("mov", "mp3")
    assert caps.supports_pair("mov", "webm")


def test_libreoffice_converts_within_document_family():
    caps = EngineRegistry(builtin_engines()).get_capabilities("libreoffice")
    assert caps.supports_pair("docx", "odt")
    assert caps.supports_pair("docx", "pptx")
    assert caps.supports_pair("xlsx", "pdf")
    assert caps.supports_pair("pptx", "png")
    assert not caps.supports_pair("xlsx", "docx")
    assert not caps.supports_pair("pptx", "xlsx")


def test_imagemagick_vector_and_pdf_rules():
    caps = EngineRegistry(builtin_engines()).get_capabilities("imagemagick")
    assert caps.supports_pair("svg", "png")
    assert caps.supports_pair("pdf", "jpg")
    assert not caps.supports_pair("pdf", "pdf")
    assert not caps.supports_pair("heic", "gif")
    assert caps.supports_pair("png", "ico")


def test_pair_outputs_survive_dict_round_trip():
    caps = make_caps(pair_outputs={"wav": frozenset({"mp3"})})
    assert EngineCapabilities.from_dict(caps.to_dict()).pair_outputs == {"wav": frozenset({"mp3"})}


def test_allow_lists_and_defaults_are_normalised_on_load():
    data = make_caps("local").to_dict()
    data["allowed_qualities"] = ["High", " MEDIUM "]
    data["allowed_resolutions"] = ["1080P", "Original"]
    data["allowed_framerates"] = [30, 29.97, "Original"]
    data["defaults"] = {"videoQuality": "High", "resolution": "Original", "framerate": 30.0}
    caps = EngineCapabilities.from_dict(data)
    assert caps.allowed_qualities == ("high", "medium")
    assert caps.allowed_resolutions == ("1080p", "original")
    assert caps.allowed_framerates == ("30", "29.97", "original")
    assert caps.defaults == {"videoQuality": "high", "resolution": "original", "framerate": "30"}
    assert caps.covers({"videoQuality": "high", "resolution": "1080p"}, None)


@pytest.mark.parametrize("rate", ["abc", "0", "-24", ""])
def test_invalid_framerate_in_allow_list_rejected(rate):
    data = make_caps("local").to_dict()
    data["allowed_framerates"] = ["original", rate]
    with pytest.raises(ValueError):
        EngineCapabilities.from_dict(data)
