"""Prompt templates and builders.

Everything here is pure string assembly: no I/O, no model calls. Image
placeholders such as {{product}} refer to the images that follow the text part
in the same request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

MODE_SIMPLE = "simple"
MODE_EXTENDED = "extended"
GEN_MODES = (MODE_SIMPLE, MODE_EXTENDED)

# Outfit slots in the order they are shown to the model
OUTFIT_SLOT_ORDER = ("top", "pants", "inner", "hat", "shoes")
OUTFIT_SLOT_LABELS: Dict[str, str] = {
    "top": "Top",
    "pants": "Pants / Skirt",
    "inner": "Inner layer",
    "hat": "Hat",
    "shoes": "Shoes",
}

NEGATIVE_CONSTRAINTS = (
    "Negatives: no visible studio equipment (light stands, softboxes, reflectors, cables), "
    "exaggerated or distorted anatomy, fake portrait-mode blur, CGI/illustration look, "
    "unnatural merge of background and character, pasted-on look."
)


def with_negatives(prompt: str) -> str:
    return f"{prompt.rstrip()}\n\n{NEGATIVE_CONSTRAINTS}"


# ---------------------------------------------------------------------------
# Two-step prompting
# ---------------------------------------------------------------------------

DEFAULT_SHOT_INSTRUCTIONS = """- composition: full-body vertical frame, model slightly off-centre, garment fully visible
- model pose: relaxed natural standing pose, weight on one leg, hands away from the garment
- model expression: calm, confident, looking slightly past the camera
- camera position: eye level, 3-4 metres from the model
- camera setting: 85mm lens, f/4, sharp focus on the garment
- lighting and color: soft diffused key light from the front-left, gentle fill, true-to-life colors"""


@dataclass(frozen=True)
class ShotInstructions:
    """Output of the instruction step of extended mode.

    ``is_default`` marks the generic fallback used when the instruction call
    failed; generation continues with it either way.
    """
    text: str
    is_default: bool = False


def default_shot_instructions() -> ShotInstructions:
    return ShotInstructions(text=DEFAULT_SHOT_INSTRUCTIONS, is_default=True)


def combined_prompt(instructions: ShotInstructions, image_prompt: str) -> str:
    """The prompt text recorded for an extended-mode image."""
    return (
        f"[Photography Instructions]\n{instructions.text}\n\n"
        f"[Image Generation Prompt]\n{image_prompt}"
    )


# ---------------------------------------------------------------------------
# Single generation (product / model)
# ---------------------------------------------------------------------------

PRODUCT_PROMPT = (
    "Photograph this product as a professional e-commerce studio product shot. "
    "Reproduce every detail of the product exactly; do not add or remove any element."
)

SIMPLE_MODEL_PROMPT = (
    "Create an authentic on-model photo of {{product}}. Use {{background}} as the environment "
    "and {{model}} as the model reference, without making the model an exact copy of the reference. "
    "Keep it casual and lived-in, in the style of Instagram / Xiaohongshu Korean street fashion."
)

_STYLE_NAMES = {"korean": "Korean idol", "western": "Western"}


def build_instruct_prompt(
    has_model: bool,
    has_background: bool,
    model_style: Optional[str] = None,
    product_count: int = 1,
) -> str:
    """Ask the vision model for structured shooting instructions."""
    refs = ["product image{{product}}" if product_count == 1 else f"{product_count} product images{{{{product}}}}"]
    if has_model:
        refs.append("model image{{model}}")
    if model_style and model_style != "auto":
        refs.append(f"model style {_STYLE_NAMES.get(model_style, model_style)}")
    if has_background:
        refs.append("background image{{background}}")

    return (
        "You are a photographer who shoots lifestyle photos for Instagram and Xiaohongshu.\n\n"
        f"Based on the user's {', '.join(refs)}, write shooting instructions for a model "
        "showcasing the product, in a Korean, lived-in social-media style. "
        "Use exactly this format:\n\n"
        "- composition:\n"
        "- model pose:\n"
        "- model expression:\n"
        "- camera position:\n"
        "- camera setting:\n"
        "- lighting and color:"
    )


def build_model_prompt(
    has_model: bool,
    has_background: bool,
    model_style: Optional[str] = None,
    model_gender: Optional[str] = None,
    instructions: Optional[ShotInstructions] = None,
) -> str:
    if has_model:
        prompt = (
            "Take an authentic photo of the {{model}} showing the {{product}}, "
            "use an Instagram-friendly composition with a lived-in feel."
        )
    else:
        prompt = "Design a suitable idol-look model for the product shown in {{product}}."
        if model_style and model_style != "auto":
            prompt = prompt[:-1] + f" In a style of {_STYLE_NAMES.get(model_style, model_style)}."
        if model_gender:
            prompt = prompt[:-1] + f", gender is {model_gender}."

    if has_background:
        prompt += "\n\nThe background should be consistent with {{background}}."

    prompt += "\n\nThe color/size/design/detail must be exactly the same as {{product}}."

    if instructions is not None:
        prompt += f"\n\nPhoto shot instruction:\n{instructions.text}"

    return with_negatives(prompt)


# ---------------------------------------------------------------------------
# Pro studio
# ---------------------------------------------------------------------------

def build_pro_studio_instruct_prompt(has_background: bool, product_count: int = 1) -> str:
    products = "the product [Product]" if product_count == 1 else f"the {product_count} products [Product 1..{product_count}]"
    backdrop = (
        "Keep the provided backdrop [Background] exactly as it is; plan the pose and framing around it."
        if has_background
        else "Choose a suitable studio backdrop for this model and outfit."
    )
    return (
        "You are a professional e-commerce studio photographer. Based on "
        f"{products} and the model [Model], style a complete look around the product, "
        "then plan one studio shot.\n"
        f"{backdrop}\n"
        "The backdrop must not show any lighting rigs or other studio equipment; describe the finished photo.\n"
        "Answer strictly in English in this format and nothing else:\n"
        "{\n"
        '"background": "",\n'
        '"model_pose": "",\n'
        '"composition": "",\n'
        '"camera_setting": ""\n'
        "}"
    )


def build_pro_studio_prompt(
    mode: str,
    has_background: bool,
    instructions: Optional[ShotInstructions] = None,
    outfit_labels: Optional[List[str]] = None,
) -> str:
    """Final image prompt for pro studio; four variants (simple/extended × with/without backdrop)."""
    if outfit_labels and len(outfit_labels) > 1:
        product_line = (
            "Dress the model in ALL of the following items at the same time: "
            + ", ".join(outfit_labels)
            + ". Each item must match its reference image exactly."
        )
    else:
        product_line = "Dress the model in the product [Product]; it must match the reference exactly."

    if has_background:
        backdrop = (
            "Use the provided backdrop [Background] exactly: same colors, materials, lighting direction "
            "and perspective. Do not invent or alter scene elements."
        )
    else:
        backdrop = (
            "Invent a clean, premium studio backdrop that complements the outfit: seamless paper or "
            "painted wall, soft graduated light, nothing that competes with the garment."
        )

    lines = [
        "[Role: Professional Commercial Photographer]",
        "[Task: High-Fidelity Fashion Studio Photography]",
        "",
        "Use the exact face, skin tone and body shape of the model [Model]; ignore the clothes in the model reference.",
        product_line,
        backdrop,
    ]

    if mode == MODE_EXTENDED and instructions is not None:
        lines += ["", "Camera & Shot Settings", instructions.text]
    else:
        lines += [
            "",
            "Full-body shot, natural confident pose, professional studio lighting, soft shadows, "
            "8k, realistic skin texture and fabric drape.",
        ]

    return with_negatives("\n".join(lines))


# ---------------------------------------------------------------------------
# Lifestyle
# ---------------------------------------------------------------------------

LIFESTYLE_VLM_PROMPT = """Role
You are a senior fashion design analyst with a sharp eye for garment construction.

Task
Analyse the clothing worn in the input image and extract its attributes using the
strict taxonomy below. Output standard JSON only.

Critical rules
1. Dominant layer: tag only the most dominant, outermost, most visible garment.
   Ignore inner layers, shoes, bags, jewellery, hats and scarves.
2. Mutual exclusion: decide outfit_type first.
   - two_piece: fill "upper" and "lower"; "onepiece" must be null.
   - one_piece: fill "onepiece"; "upper" and "lower" must be null.
3. Strict vocabulary: every value must come from the lists below.
4. Honesty: if a field cannot be judged, use "unknown".

Vocabulary
- outfit_type: ["two_piece", "one_piece"]
- upper.category: ["tshirt", "tank_cami", "shirt", "blouse", "polo", "knit_sweater", "cardigan",
  "hoodie_sweatshirt", "jacket", "blazer", "coat", "puffer", "vest", "unknown"]
- upper.upper_length: ["cropped", "regular", "longline", "unknown"]
- lower.category: ["jeans", "trousers", "leggings", "shorts", "skirt", "unknown"]
- lower.lower_length: ["mini", "midi", "maxi", "ankle", "full", "unknown"]
- onepiece.category: ["dress", "jumpsuit_romper", "unknown"]
- onepiece.onepiece_length: ["mini", "midi", "maxi", "unknown"]
- design_intent: ["minimal_clean", "tailored_sharp", "utility_functional", "soft_draped",
  "statement_bold", "sporty_tech", "unknown"]
- fit: ["slim", "regular", "relaxed", "oversized", "unknown"]

Output format
{
  "outfit_type": "",
  "upper": {"category": "", "upper_length": "", "fit": "", "design_intent": ""} | null,
  "lower": {"category": "", "lower_length": "", "fit": "", "design_intent": ""} | null,
  "onepiece": {"category": "", "onepiece_length": "", "fit": "", "design_intent": ""} | null
}"""


def build_lifestyle_match_prompt(product_tag_json: str, scene_tags_json: str, models_json: str) -> str:
    return f"""You are a street-style fashion photographer and casting director.

The product in the attached image has been tagged as:
{product_tag_json}

Candidate scenes (lifestyle_scene_tags):
{scene_tags_json}

Candidate models (models_analysis):
{models_json}

Choose 4 models and 4 scenes that best suit the product. Prefer models whose overall
style, gender and age group match the garment, and scenes whose mood flatters it.
Use 4 different scenes when enough candidates exist.

Output JSON only, using ids from the lists above:
{{
  "model_id_1": "", "model_id_2": "", "model_id_3": "", "model_id_4": "",
  "scene_id_1": "", "scene_id_2": "", "scene_id_3": "", "scene_id_4": ""
}}"""


LIFESTYLE_FINAL_PROMPT = """[Role: Professional street-style fashion photographer]
[Task: Candid lifestyle photo of a model wearing the product]

1. THE PRODUCT [Product]: reconstruct this exact garment; logo, text, neckline and pattern must be identical.
2. THE MODEL [Model]: use this exact face, skin tone and body shape; ignore the reference clothing.
3. THE SCENE [Scene]: place the model in this environment with matching light and perspective.

Natural, candid street-style moment; realistic skin texture and fabric physics; natural daylight."""


def lifestyle_final_prompt() -> str:
    return with_negatives(LIFESTYLE_FINAL_PROMPT)
