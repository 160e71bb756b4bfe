from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Preset:
    name: str
    code: str
    passthrough: bool = False
    lora_weights: Optional[str] = None
    lora_scale: float = 1.0
    prompt: str = ""
    prompt_strength: float = 0.8


PRESETS: List[Preset] = [
    Preset(name="Original", code="o", passthrough=True),
    Preset(
        name="Monet",
        code="m",
        lora_weights="huggingface.co/impression-styles/monet-lora",
        lora_scale=0.9,
        prompt="an impressionist oil painting in the style of Claude Monet, soft broken brushstrokes, "
        "luminous pastel light, water lilies palette",
    ),
    Preset(
        name="VanGogh",
        code="v",
        lora_weights="huggingface.co/impression-styles/van-gogh-lora",
        lora_scale=1.0,
        prompt="a post-impressionist painting in the style of Vincent van Gogh, thick impasto, "
        "swirling strokes, vivid complementary colors",
    ),
    Preset(
        name="Watercolor",
        code="w",
        lora_weights="huggingface.co/impression-styles/watercolor-lora",
        lora_scale=0.8,
        prompt="a loose watercolor painting, wet-on-wet washes, paper texture, soft bleeding edges",
        prompt_strength=0.7,
    ),
    Preset(
        name="Sketch",
        code="s",
        lora_weights="huggingface.co/impression-styles/pencil-sketch-lora",
        lora_scale=0.85,
        prompt="a graphite pencil sketch, cross hatching, white paper, fine line work",
        prompt_strength=0.75,
    ),
]

_NON_ALNUM = re.compile(r"[\s_\-]+")


def _normalize(value: str) -> str:
    return _NON_ALNUM.sub("", value).lower()


def _build_index(presets: List[Preset]) -> Dict[str, Preset]:
    index: Dict[str, Preset] = {}
    for preset in presets:
        index[_normalize(preset.name)] = preset
        index[preset.code] = preset
    return index


_INDEX = _build_index(PRESETS)


def allowed_presets() -> List[str]:
    return [p.name for p in PRESETS]


def resolve_preset(value: Optional[str]) -> Optional[Preset]:
    """Look up a preset by name or one-letter code; None when unknown."""
    if not value:
        return None
    key = _normalize(value)
    if not key:
        return None
    return _INDEX.get(key)


def build_model_input(preset: Preset, image_data_uri: str, output_format: str = "png") -> Dict[str, object]:
    if preset.passthrough:
        raise ValueError(f"preset {preset.name} does not call the model")
    return {
        "image": image_data_uri,
        "prompt": preset.prompt,
        "lora_weights": preset.lora_weights,
        "lora_scale": preset.lora_scale,
        "prompt_strength": preset.prompt_strength,
        "output_format": output_format,
    }
