"""
Transcoder filter chain builder.

Turns a FilterConfig into the ordered list of ffmpeg audio filter stages and the full
transcoder argument vector. Everything here is pure: no state, no I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from aiostreamify.models.filters import EffectPreset, FilterConfig
from aiostreamify.models.types import OutputFormat
from aiostreamify.util import clamp, format_number, is_enabled, to_float

logger = logging.getLogger(__name__)

EQ_BANDS = [25, 40, 63, 100, 160, 250, 400, 630, 1000, 1600, 2500, 4000, 6300, 10000, 16000]
EQ_GAIN_MIN = -0.25
EQ_GAIN_MAX = 1.0
# Band gains are expressed in [-0.25, 1.0] and scaled to dB for the equalizer stage
EQ_GAIN_SCALE = 12

SAMPLE_RATE = 48000
DEFAULT_BITRATE = "128k"

EQ_PRESETS: dict[str, list[float]] = {
    "flat": [0.0] * 15,
    "rock": [0.3, 0.25, 0.2, 0.1, -0.05, -0.1, 0.1, 0.25, 0.35, 0.4, 0.4, 0.35, 0.3, 0.25, 0.2],
    "pop": [0.2, 0.35, 0.4, 0.35, 0.2, 0, -0.1, -0.1, 0, 0.15, 0.2, 0.25, 0.3, 0.35, 0.35],
    "jazz": [0.2, 0.15, 0.1, 0, -0.1, -0.1, 0, 0.1, 0.2, 0.25, 0.25, 0.2, 0.15, 0.1, 0.1],
    "classical": [0.3, 0.25, 0.2, 0.15, 0.1, 0, -0.1, -0.1, 0, 0.1, 0.2, 0.25, 0.3, 0.35, 0.35],
    "electronic": [0.4, 0.35, 0.25, 0, -0.1, -0.15, 0, 0.1, 0.2, 0.3, 0.35, 0.4, 0.35, 0.3, 0.25],
    "hiphop": [0.4, 0.35, 0.3, 0.2, 0.1, 0, -0.1, -0.1, 0, 0.15, 0.2, 0.15, 0.1, 0.1, 0.15],
    "acoustic": [0.3, 0.25, 0.2, 0.15, 0.1, 0.1, 0.15, 0.2, 0.2, 0.15, 0.1, 0.1, 0.15, 0.2, 0.25],
    "rnb": [0.35, 0.4, 0.35, 0.2, 0.05, -0.05, 0, 0.1, 0.15, 0.15, 0.1, 0.05, 0.1, 0.15, 0.2],
    "latin": [0.25, 0.2, 0.1, 0, 0, 0, 0, 0.1, 0.2, 0.3, 0.35, 0.35, 0.3, 0.25, 0.2],
    "loudness": [0.4, 0.35, 0.25, 0.1, 0, -0.1, -0.1, 0, 0.1, 0.2, 0.3, 0.35, 0.4, 0.45, 0.45],
    "piano": [0.2, 0.15, 0.1, 0.05, 0, 0.05, 0.1, 0.15, 0.2, 0.2, 0.15, 0.1, 0.1, 0.15, 0.2],
    "vocal": [-0.2, -0.15, -0.1, 0, 0.2, 0.35, 0.4, 0.4, 0.35, 0.2, 0, -0.1, -0.15, -0.15, -0.1],
    "bass_heavy": [0.5, 0.45, 0.4, 0.3, 0.2, 0.1, 0, 0, 0, 0, 0, 0, 0, 0, 0],
    "treble_heavy": [0, 0, 0, 0, 0, 0, 0, 0, 0.1, 0.2, 0.3, 0.4, 0.45, 0.5, 0.5],
    "extra_bass": [0.6, 0.55, 0.5, 0.4, 0.25, 0.1, 0, 0, 0, 0, 0, 0, 0, 0, 0],
    "crystal_clear": [-0.1, -0.1, 0, 0, 0, 0, 0.05, 0.1, 0.2, 0.3, 0.35, 0.4, 0.45, 0.45, 0.4],
}

EFFECT_PRESETS: dict[str, dict[str, Any]] = {
    "bassboost": {
        "description": "Heavy low end boost",
        "filters": {"bass": 12, "equalizer": [0.3, 0.25, 0.2, 0.1, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0]},
    },
    "nightcore": {
        "description": "Faster and higher pitched",
        "filters": {"speed": 1.25, "pitch": 1.25},
    },
    "vaporwave": {
        "description": "Slower and lower pitched",
        "filters": {"speed": 0.8, "pitch": 0.8},
    },
    "8d": {
        "description": "Audio rotating around the listener",
        "filters": {"rotation": {"speed": 0.125}},
    },
    "karaoke": {"description": "Reduce centered vocals", "filters": {"karaoke": True}},
    "trebleboost": {"description": "Brighter high end", "filters": {"treble": 10}},
    "deep": {"description": "Deeper voice and fuller bass", "filters": {"pitch": 0.85, "bass": 6}},
    "lofi": {"description": "Muffled lo-fi sound", "filters": {"lowpass": 3500, "bass": 3}},
    "radio": {
        "description": "AM radio band",
        "filters": {"highpass": 500, "lowpass": 5000, "compressor": True},
    },
    "telephone": {
        "description": "Narrow band phone line",
        "filters": {"highpass": 300, "lowpass": 3400, "mono": True},
    },
    "soft": {"description": "Quieter and mellower", "filters": {"volume": 70, "treble": -5}},
    "loud": {"description": "Louder and compressed", "filters": {"volume": 150, "compressor": True}},
    "chipmunk": {"description": "Very high pitch", "filters": {"pitch": 1.5}},
    "darth": {"description": "Very low pitch", "filters": {"pitch": 0.7}},
    "echo": {"description": "Echo effect", "filters": {"echo": True}},
    "vibrato": {
        "description": "Pitch wobble",
        "filters": {"vibrato": {"frequency": 6, "depth": 0.5}},
    },
    "tremolo": {
        "description": "Volume wobble",
        "filters": {"tremolo": {"frequency": 5, "depth": 0.6}},
    },
    "reverb": {"description": "Room reverb", "filters": {"reverb": True}},
    "surround": {"description": "Surround sound", "filters": {"surround": True}},
    "boost": {
        "description": "Overall louder and fuller",
        "filters": {"volume": 130, "bass": 4, "treble": 4},
    },
    "subboost": {
        "description": "Sub bass emphasis",
        "filters": {"bass": 15, "lowshelf": {"frequency": 60, "gain": 8}},
    },
}

# Value of a numeric filter that leaves the audio unchanged
NEUTRAL_VALUES: dict[str, float] = {
    "speed": 1.0,
    "pitch": 1.0,
    "volume": 100.0,
    "lowpass": 20000.0,
    "highpass": 20.0,
}
# Nested fields interpolated by effect intensity; the others are kept as-is
INTERPOLATED_NESTED_FIELDS = frozenset({"depth", "gain"})

# Boolean toggles in output order
TOGGLE_STAGES: dict[str, list[str]] = {
    "karaoke": ["pan=stereo|c0=c0-c1|c1=c1-c0"],
    "mono": ["pan=mono|c0=0.5*c0+0.5*c1"],
    "surround": ["surround"],
    "flanger": ["flanger"],
    "phaser": ["aphaser"],
    "chorus": ["chorus=0.5:0.9:50|60|40:0.4|0.32|0.3:0.25|0.4|0.3:2|2.3|1.3"],
    "compressor": ["acompressor=threshold=-20dB:ratio=4:attack=5:release=50"],
    "normalizer": ["loudnorm"],
    "echo": ["aecho=0.8:0.88:60:0.4"],
    "reverb": ["aecho=0.8:0.9:40|50|70:0.4|0.3|0.2"],
    "nightcore": ["atempo=1.25", f"asetrate={SAMPLE_RATE}*1.25,aresample={SAMPLE_RATE}"],
    "vaporwave": ["atempo=0.8", f"asetrate={SAMPLE_RATE}*0.8,aresample={SAMPLE_RATE}"],
    "bassboost": ["bass=g=10"],
    "8d": ["apulsator=mode=sine:hz=0.125"],
}

_CODECS = {
    OutputFormat.OPUS: ("libopus", "ogg"),
    OutputFormat.MP3: ("libmp3lame", "mp3"),
    OutputFormat.AAC: ("aac", "adts"),
}

FilterInput = FilterConfig | Mapping[str, Any] | None


def build_equalizer(bands: Any) -> list[str]:
    """
    Build peaking equalizer stages for up to 15 band gains.

    Zero gain bands and non-numeric entries produce no stage.
    """
    if not isinstance(bands, (list, tuple)):
        return []
    stages = []
    for freq, gain in zip(EQ_BANDS, bands):
        if isinstance(gain, bool) or not isinstance(gain, (int, float)) or not gain:
            continue
        clamped = clamp(gain, EQ_GAIN_MIN, EQ_GAIN_MAX)
        width = freq * 0.5 if freq < 1000 else freq * 0.3
        stages.append(
            f"equalizer=f={freq}:width_type=h:width={format_number(width)}"
            f":g={format_number(clamped * EQ_GAIN_SCALE)}"
        )
    return stages


def _nested(value: Any, key: str, default: float) -> float:
    if not isinstance(value, Mapping):
        return default
    result = to_float(value.get(key))
    return default if result is None else result


def build_filter_chain(filters: FilterInput) -> list[str]:
    """Return the ordered list of ffmpeg audio filter stages for a filter configuration."""
    if not filters:
        return []
    get = filters.get
    stages: list[str] = []

    stages.extend(build_equalizer(get("equalizer")))
    preset = get("preset")
    if isinstance(preset, str) and preset in EQ_PRESETS:
        stages.extend(build_equalizer(EQ_PRESETS[preset]))

    if (bass := to_float(get("bass"))) is not None and bass != 0:
        stages.append(f"bass=g={format_number(clamp(bass, -20, 20))}")
    if (treble := to_float(get("treble"))) is not None and treble != 0:
        stages.append(f"treble=g={format_number(clamp(treble, -20, 20))}")
    if (speed := to_float(get("speed"))) is not None and speed != 1:
        stages.append(f"atempo={format_number(clamp(speed, 0.5, 2.0))}")
    if (pitch := to_float(get("pitch"))) is not None and pitch != 1:
        rate = format_number(clamp(pitch, 0.5, 2.0))
        stages.append(f"asetrate={SAMPLE_RATE}*{rate},aresample={SAMPLE_RATE}")
    if (volume := to_float(get("volume"))) is not None and volume != 100:
        stages.append(f"volume={format_number(clamp(volume, 0, 200) / 100)}")

    if tremolo := get("tremolo"):
        freq = clamp(_nested(tremolo, "frequency", 4), 0.1, 20)
        depth = clamp(_nested(tremolo, "depth", 0.5), 0, 1)
        stages.append(f"tremolo=f={format_number(freq)}:d={format_number(depth)}")
    if vibrato := get("vibrato"):
        freq = clamp(_nested(vibrato, "frequency", 4), 0.1, 14)
        depth = clamp(_nested(vibrato, "depth", 0.5), 0, 1)
        stages.append(f"vibrato=f={format_number(freq)}:d={format_number(depth)}")
    if rotation := get("rotation"):
        hz = clamp(_nested(rotation, "speed", 0.125), 0.01, 5)
        stages.append(f"apulsator=mode=sine:hz={format_number(hz)}:width=1")

    if lowpass := to_float(get("lowpass")):
        stages.append(f"lowpass=f={format_number(clamp(lowpass, 100, 20000))}")
    if highpass := to_float(get("highpass")):
        stages.append(f"highpass=f={format_number(clamp(highpass, 20, 10000))}")

    if bandpass := get("bandpass"):
        freq = _nested(bandpass, "frequency", 1000)
        width = _nested(bandpass, "width", 200)
        stages.append(f"bandpass=f={format_number(freq)}:width_type=h:width={format_number(width)}")
    if bandreject := get("bandreject") or get("notch"):
        freq = _nested(bandreject, "frequency", 1000)
        width = _nested(bandreject, "width", 200)
        stages.append(
            f"bandreject=f={format_number(freq)}:width_type=h:width={format_number(width)}"
        )

    if lowshelf := get("lowshelf"):
        freq = _nested(lowshelf, "frequency", 200)
        gain = _nested(lowshelf, "gain", 0)
        stages.append(f"lowshelf=f={format_number(freq)}:g={format_number(gain)}")
    if highshelf := get("highshelf"):
        freq = _nested(highshelf, "frequency", 3000)
        gain = _nested(highshelf, "gain", 0)
        stages.append(f"highshelf=f={format_number(freq)}:g={format_number(gain)}")
    if peaking := get("peaking"):
        freq = _nested(peaking, "frequency", 1000)
        gain = _nested(peaking, "gain", 0)
        q = _nested(peaking, "q", 1)
        stages.append(
            f"equalizer=f={format_number(freq)}:width_type=q:width={format_number(q)}"
            f":g={format_number(gain)}"
        )

    for name, toggle_stages in TOGGLE_STAGES.items():
        if is_enabled(get(name)):
            stages.extend(toggle_stages)

    return stages


def resolve_output_format(value: OutputFormat | str | None) -> OutputFormat:
    """Return the output format, falling back to opus for unknown values."""
    if isinstance(value, OutputFormat):
        return value
    try:
        return OutputFormat(value)
    except ValueError:
        logger.debug("Unknown output format %r, falling back to opus", value)
        return OutputFormat.OPUS


def build_transcoder_args(
    filters: FilterInput = None,
    *,
    output_format: OutputFormat | str | None = OutputFormat.OPUS,
    bitrate: str | None = DEFAULT_BITRATE,
    input_path: str | None = None,
    seek_ms: int = 0,
) -> list[str]:
    """
    Build the ffmpeg argument vector (without the executable).

    Args:
        filters: Filter configuration to render into an `-af` chain.
        output_format: Delivery codec; unknown values fall back to opus.
        bitrate: Encoder bitrate, e.g. "128k".
        input_path: Read a local file instead of standard input.
        seek_ms: Input offset, only honored for local files. Piped input is already
            trimmed by the extractor.
    """
    args = ["-hide_banner", "-loglevel", "error"]
    if input_path is not None:
        if seek_ms > 0:
            args += ["-ss", format_number(seek_ms / 1000)]
        args += ["-i", input_path]
    else:
        args += ["-i", "pipe:0"]
    args.append("-vn")

    if stages := build_filter_chain(filters):
        args += ["-af", ",".join(stages)]

    codec, container = _CODECS[resolve_output_format(output_format)]
    args += ["-acodec", codec, "-b:a", bitrate or DEFAULT_BITRATE, "-f", container, "-"]
    return args


def _interpolate(key: str, target: Any, intensity: float) -> Any:
    if isinstance(target, bool):
        return target
    if isinstance(target, (int, float)):
        neutral = NEUTRAL_VALUES.get(key, 0.0)
        return round(neutral + (target - neutral) * intensity, 4)
    if isinstance(target, list):
        return [round(gain * intensity, 4) for gain in target]
    if isinstance(target, Mapping):
        return {
            field: round(value * intensity, 4)
            if field in INTERPOLATED_NESTED_FIELDS and isinstance(value, (int, float))
            else value
            for field, value in target.items()
        }
    return target


def apply_effect_preset(name: str, intensity: float = 1.0) -> dict[str, Any] | None:
    """
    Return the filters of an effect preset scaled by intensity.

    Numeric fields move linearly from their neutral value toward the preset value;
    boolean fields pass through. Returns None for unknown presets.
    """
    preset = EFFECT_PRESETS.get(name)
    if preset is None:
        return None
    intensity = clamp(to_float(intensity) or 0.0, 0.0, 1.0)
    return {key: _interpolate(key, value, intensity) for key, value in preset["filters"].items()}


def _as_effect_preset(value: EffectPreset | str | tuple[str, float]) -> EffectPreset:
    if isinstance(value, EffectPreset):
        return value
    if isinstance(value, str):
        return EffectPreset(value)
    name, intensity = value
    return EffectPreset(name, intensity)


def combine_effect_presets(
    presets: Iterable[EffectPreset | str | tuple[str, float]],
) -> tuple[dict[str, Any], list[EffectPreset]]:
    """
    Merge several effect presets in order; later presets override earlier keys.

    Returns the merged filters and the presets that were applied. Unknown names are
    skipped.
    """
    merged: dict[str, Any] = {}
    applied: list[EffectPreset] = []
    for value in presets:
        preset = _as_effect_preset(value)
        preset_filters = apply_effect_preset(preset.name, preset.intensity)
        if preset_filters is None:
            logger.warning("Unknown effect preset: %s", preset.name)
            continue
        merged.update(preset_filters)
        applied.append(preset)
    return merged, applied


def get_available_filters() -> dict[str, dict[str, Any]]:
    """Describe every supported filter with its type and range."""
    return {
        "bass": {"type": "number", "min": -20, "max": 20, "description": "Bass boost/cut in dB"},
        "treble": {
            "type": "number",
            "min": -20,
            "max": 20,
            "description": "Treble boost/cut in dB",
        },
        "speed": {"type": "number", "min": 0.5, "max": 2.0, "description": "Playback speed"},
        "pitch": {"type": "number", "min": 0.5, "max": 2.0, "description": "Pitch multiplier"},
        "volume": {"type": "number", "min": 0, "max": 200, "description": "Volume percentage"},
        "equalizer": {
            "type": "array",
            "length": len(EQ_BANDS),
            "min": EQ_GAIN_MIN,
            "max": EQ_GAIN_MAX,
            "description": "15-band equalizer (bands 0-14)",
        },
        "preset": {"type": "string", "values": list(EQ_PRESETS), "description": "EQ preset"},
        "tremolo": {
            "type": "object",
            "properties": {"frequency": {"min": 0.1, "max": 20}, "depth": {"min": 0, "max": 1}},
            "description": "Tremolo effect",
        },
        "vibrato": {
            "type": "object",
            "properties": {"frequency": {"min": 0.1, "max": 14}, "depth": {"min": 0, "max": 1}},
            "description": "Vibrato effect",
        },
        "rotation": {
            "type": "object",
            "properties": {"speed": {"min": 0.01, "max": 5}},
            "description": "Audio rotation (8D)",
        },
        "lowpass": {"type": "number", "min": 100, "max": 20000, "description": "Low-pass (Hz)"},
        "highpass": {"type": "number", "min": 20, "max": 10000, "description": "High-pass (Hz)"},
        "bandpass": {"type": "object", "properties": ["frequency", "width"]},
        "bandreject": {"type": "object", "properties": ["frequency", "width"]},
        "lowshelf": {"type": "object", "properties": ["frequency", "gain"]},
        "highshelf": {"type": "object", "properties": ["frequency", "gain"]},
        "peaking": {"type": "object", "properties": ["frequency", "gain", "q"]},
        **{name: {"type": "boolean"} for name in TOGGLE_STAGES},
    }


def get_eq_presets() -> dict[str, list[float]]:
    """Return a copy of the equalizer presets."""
    return {name: list(bands) for name, bands in EQ_PRESETS.items()}


def get_effect_presets_info() -> list[dict[str, Any]]:
    """Return name, description and affected filters of every effect preset."""
    return [
        {"name": name, "description": preset["description"], "filters": list(preset["filters"])}
        for name, preset in EFFECT_PRESETS.items()
    ]
