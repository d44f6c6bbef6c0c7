"""
Image prompt for one carousel slide, built from the slide's visual hints and
the client's brand kit.
"""
from typing import Any, Dict, List, Mapping, Optional

from ..core.config import DEFAULT_NEGATIVE_PROMPT

CAROUSEL_FORMAT_SUFFIX = (
    "Formato 4:5 para carrossel do Instagram. Design limpo, profissional e de alta qualidade."
)


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _format_colors(colors: Mapping[str, Any]) -> str:
    return ", ".join(f"{key}: {value}" for key, value in colors.items() if value)


def _format_attachments(items: List[Any]) -> str:
    names = []
    for item in items:
        if isinstance(item, dict):
            names.append(str(item.get("name") or "arquivo"))
        elif isinstance(item, str) and item:
            names.append(item)
    return ", ".join(names)


def build_slide_prompt(slide: Mapping[str, Any], brand_kit: Optional[Mapping[str, Any]] = None) -> str:
    brand_kit = _as_dict(brand_kit)
    identity = _as_dict(brand_kit.get("brandIdentity"))
    communication = _as_dict(brand_kit.get("communication"))
    visual_style = _as_dict(identity.get("visualStyle"))
    visual_elements = _as_dict(identity.get("visualElements"))
    references = _as_dict(identity.get("visualReferences"))

    tone = communication.get("customTone") if communication.get("tone") == "custom" else communication.get("tone")
    colors = _format_colors(_as_dict(identity.get("colors")))
    style = ", ".join(str(v) for v in (visual_style.get("type"), visual_style.get("mood"), visual_style.get("imageStyle")) if v)
    layout = visual_style.get("composition") or visual_elements.get("preferredLayout")
    manuals = _format_attachments(_as_list(identity.get("brandManuals")))
    recurring = ", ".join(
        key[len("use"):].lower()
        for key, value in visual_elements.items()
        if isinstance(key, str) and key.startswith("use") and value
    )
    links = ", ".join(str(link) for link in _as_list(references.get("links")) if link)
    uploads = _format_attachments(_as_list(references.get("uploads")))
    reference_notes = ". ".join(p for p in (
        references.get("notes"),
        f"Links: {links}" if links else None,
        f"Uploads: {uploads}" if uploads else None,
    ) if p)

    description = [
        slide.get("visualDescription") or slide.get("title") or "Instagram carousel slide",
        f"Tom geral: {tone}" if tone else None,
        f"Estilo legado: {style}" if style else None,
        f"Paleta da marca: {colors}" if colors else None,
        f"Composição desejada: {layout}" if layout else None,
        f"Elementos recorrentes: {recurring}" if recurring else None,
        f"Considere materiais: {manuals}" if manuals else None,
        f"Referências visuais: {reference_notes}" if reference_notes else None,
    ]

    overlay = " ".join(p for p in (
        f'Title: "{slide["title"]}"' if slide.get("title") else None,
        f'Subtitle: "{slide["subtitle"]}"' if slide.get("subtitle") else None,
        f'Body: "{slide["body"]}"' if slide.get("body") else None,
    ) if p)

    return (
        f"{'. '.join(str(p) for p in description if p)}. {CAROUSEL_FORMAT_SUFFIX} "
        f"Inclua espaço para texto com {overlay or 'mensagens da marca'}."
    )


def build_negative_prompt() -> str:
    return DEFAULT_NEGATIVE_PROMPT
