"""
Prompt construction for try-on and edit requests.

Turns clothing items and a quality tier into the instruction text, the
avoidance (negative) text and the numeric generation parameters sent to the
inference service.

Flow:
1. Sort clothing by category precedence (dress, top, bottom, shoes, accessories)
2. Map each input image to its role (image 1 is always the person)
3. Add identity preservation and garment placement constraints
4. Apply tier-specific output and parameters
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .errors import InvalidRequest, TooManyItems
from .pricing import QualityTier

MAX_CLOTHING_ITEMS = 5


class ClothingCategory(Enum):
    """Clothing categories, declared in rendering precedence."""
    DRESS = "dress"
    TOP = "top"
    BOTTOM = "bottom"
    SHOES = "shoes"
    ACCESSORIES = "accessories"


# Dress first because it visually covers both top and bottom
CATEGORY_PRIORITY: Dict[ClothingCategory, int] = {
    ClothingCategory.DRESS: 1,
    ClothingCategory.TOP: 2,
    ClothingCategory.BOTTOM: 3,
    ClothingCategory.SHOES: 4,
    ClothingCategory.ACCESSORIES: 5,
}

IMAGE_TYPE_HINTS: Dict[str, str] = {
    "flatlay": "flat lay on surface",
    "mannequin": "on mannequin/dress form",
    "worn": "worn by another model",
    "product": "product photo (plain background)",
    "lifestyle": "lifestyle/editorial photo",
    "unknown": "unspecified - analyze and extract appropriately",
}


@dataclass(frozen=True)
class TierParameters:
    num_inference_steps: int
    guidance_scale: float


TIER_PARAMETERS: Dict[QualityTier, TierParameters] = {
    QualityTier.STANDARD: TierParameters(num_inference_steps=50, guidance_scale=7.5),
    QualityTier.HD: TierParameters(num_inference_steps=75, guidance_scale=8.5),
}

NEGATIVE_PROMPT = ", ".join([
    "deformed", "distorted face", "wrong anatomy", "bad anatomy",
    "extra limbs", "missing limbs", "extra arms", "extra legs", "extra fingers",
    "fused fingers", "mutated hands", "poorly drawn hands", "poorly drawn face",
    "malformed limbs", "disconnected limbs", "duplicate body parts", "long neck",
    "unrealistic proportions", "bad proportions",
    "blurry", "low quality", "watermark", "text", "logo", "signature",
    "cartoon", "anime", "illustration", "drawing",
    "different person", "face swap", "age change", "gender change",
    "floating objects", "out of frame", "cloned face", "disfigured",
])

EDIT_TEMPLATE = """You are a photorealistic image editor. Edit the following image according to this instruction: "{instruction}"

CRITICAL CONSTRAINTS - MUST FOLLOW:

1. FACE & IDENTITY PRESERVATION (HIGHEST PRIORITY):
   - The person's face must remain identical to the original: same facial structure, eyes, nose, mouth, jawline, skin tone, facial hair, and all distinguishing features.
   - Do NOT alter face shape, skin color, eye size, or facial proportions under any circumstance.
   - If the edit involves the head area (hats, hair, glasses), the face underneath must stay exactly the same.
   - Hair style and hair color must remain unchanged UNLESS the instruction explicitly asks to change them.

2. BODY PRESERVATION:
   - Body shape, body proportions, pose, hands, skin tone, and height must remain identical.
   - Only modify the specific area or item mentioned in the instruction.

3. BACKGROUND & COMPOSITION:
   - Background, camera angle, framing, and composition must stay identical.
   - Lighting direction and intensity must remain consistent.

4. EDIT SCOPE:
   - ONLY change what the instruction explicitly asks for. Nothing else.
   - Apply the change naturally with correct perspective, lighting, and shadows.

5. OUTPUT QUALITY:
   - Photorealistic result with no visible AI artifacts, seams, or distortions.
   - Maintain the same resolution and quality as the original."""


@dataclass(frozen=True)
class ClothingItem:
    """One garment to apply to the model image."""
    category: ClothingCategory
    image: str
    name: Optional[str] = None
    description: Optional[str] = None
    image_type: Optional[str] = None
    color: Optional[str] = None
    material: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.description or f"{self.category.value} item"


@dataclass(frozen=True)
class PromptResult:
    """Everything the inference service needs besides the images."""
    prompt: str
    negative_prompt: str
    num_inference_steps: int
    guidance_scale: float


def tier_parameters(tier: QualityTier) -> TierParameters:
    """Generation parameters for a tier; unknown tiers get standard values."""
    return TIER_PARAMETERS.get(tier, TIER_PARAMETERS[QualityTier.STANDARD])


def sort_clothing_by_priority(items: Sequence[ClothingItem]) -> List[ClothingItem]:
    """Stable sort by category precedence. Never drops or duplicates items."""
    return sorted(items, key=lambda item: CATEGORY_PRIORITY[item.category])


def validate_clothing_items(items: Sequence[ClothingItem]) -> None:
    """Check a try-on clothing list before any gems are reserved.

    Raises:
        InvalidRequest: If the list is empty or an item has no image
        TooManyItems: If more than MAX_CLOTHING_ITEMS are given
    """
    if not items:
        raise InvalidRequest("Clothing items array is empty")
    if len(items) > MAX_CLOTHING_ITEMS:
        raise TooManyItems(f"Maximum {MAX_CLOTHING_ITEMS} clothing items allowed, got {len(items)}")
    for item in items:
        if not isinstance(item.category, ClothingCategory):
            raise InvalidRequest(f"Invalid category: {item.category}")
        if not item.image:
            raise InvalidRequest("All clothing items must have an image")


def describe_image_type(image_type: Optional[str]) -> str:
    return IMAGE_TYPE_HINTS.get(image_type or "unknown", IMAGE_TYPE_HINTS["unknown"])


def _image_map(items: List[ClothingItem]) -> List[str]:
    lines = [
        "IMPORTANT - Image assignment:",
        "- Image 1 = The person/model to dress (any pose or framing)",
    ]
    for index, item in enumerate(items, start=2):
        details = item.category.value
        if item.color:
            details += f", color: {item.color}"
        if item.material:
            details += f", material: {item.material}"
        lines.append(
            f'- Image {index} = Clothing item: "{item.label}" ({details}) '
            f"- photo type: {describe_image_type(item.image_type)}"
        )
    return lines


def _constraints(item_count: int) -> List[str]:
    return [
        "",
        "STRICT CONSTRAINTS (CRITICAL):",
        "1. IDENTITY PRESERVATION:",
        "   - Keep the person's face EXACTLY the same (facial features, skin tone, expression).",
        "   - Keep hair style, hair color, and hair length EXACTLY the same.",
        "   - Keep body proportions, height, build, and pose EXACTLY the same.",
        "   - The background must remain completely unchanged.",
        "2. CLOTHING PLACEMENT:",
        f"   - Apply ALL {item_count} clothing item(s) simultaneously to the person in Image 1.",
        "   - Fit the clothing naturally to the body and pose, respecting gravity and drape.",
        "   - Layering order: base layers first, outerwear last, accessories on top.",
        "3. COLOR & DESIGN ACCURACY:",
        "   - Color, pattern, texture, and graphics must match the source clothing images exactly.",
        "4. LIGHTING & SHADOWS:",
        "   - Lighting and shadows on the clothing must match the lighting of Image 1.",
    ]


def build_tryon_prompt(items: Sequence[ClothingItem], tier: QualityTier) -> PromptResult:
    """Build the generation request for a try-on.

    Args:
        items: Clothing items in any order
        tier: Requested quality tier

    Returns:
        PromptResult with instruction text and tier parameters
    """
    sorted_items = sort_clothing_by_priority(items)
    params = tier_parameters(tier)

    if tier is QualityTier.HD:
        output_line = (
            "OUTPUT: Ultra HD photorealistic result, 4K detail in fabric texture, "
            "stitching, and fit. Zero visible AI artifacts."
        )
    else:
        output_line = (
            "OUTPUT: High-quality photorealistic result. Clean edges, natural "
            "fabric appearance. No visible AI artifacts."
        )

    sections = [
        "Professional fashion photography of a person wearing:",
        "\n".join(f"- {item.category.value}: {item.label}" for item in sorted_items),
        "",
        "\n".join(_image_map(sorted_items)),
        "\n".join(_constraints(len(sorted_items))),
        "",
        output_line,
        f"Total images provided: {1 + len(sorted_items)} (1 person + {len(sorted_items)} clothing)",
    ]

    return PromptResult(
        prompt="\n".join(sections).strip(),
        negative_prompt=NEGATIVE_PROMPT,
        num_inference_steps=params.num_inference_steps,
        guidance_scale=params.guidance_scale,
    )


def build_edit_prompt(instruction: str) -> PromptResult:
    """Build the generation request for an edit.

    Raises:
        InvalidRequest: If the instruction is empty
    """
    cleaned = (instruction or "").strip()
    if not cleaned:
        raise InvalidRequest("edit_prompt is required in edit mode")

    params = tier_parameters(QualityTier.STANDARD)
    return PromptResult(
        prompt=EDIT_TEMPLATE.format(instruction=cleaned),
        negative_prompt=NEGATIVE_PROMPT,
        num_inference_steps=params.num_inference_steps,
        guidance_scale=params.guidance_scale,
    )
