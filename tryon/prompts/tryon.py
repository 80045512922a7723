"""Try-on prompt templates.

The synthesis prompt is sent with two images (IMAGE 1 = person,
IMAGE 2 = garment). The caption prompt is sent with the garment image only.

Examples:
    >>> from tryon.prompts.tryon import SYNTHESIS_PROMPT, get_caption_prompt
    >>> prompt = get_caption_prompt(Locale.EN)
"""

from tryon.config import Locale

SYNTHESIS_PROMPT = """CONTEXT: High-end virtual try-on for professional fitness e-commerce.

TASK: Synthesize a photo of the person in IMAGE 1 wearing the EXACT garment from IMAGE 2.

STRICT CONSTRAINTS:
1. DESIGN FIDELITY: Transfer 100% of the colors, patterns, logos, and textures from IMAGE 2. Do not simplify or alter the pattern.
2. ANATOMY: Keep the person's face, skin tone, hair, and body shape from IMAGE 1 identical.
3. PHYSICS: Adapt the fabric to the person's pose, creating realistic compression wrinkles and highlights typical of sports fabrics (spandex/polyamide).
4. CLEANLINESS: Seamlessly remove the old clothing. Edges where skin meets fabric must be photorealistic.

OUTPUT: Return the synthesized image."""

CAPTION_PROMPT_TEMPLATE = """Analyze this garment image and generate a SHORT, objective description (max 25 words) in {language} describing the virtual try-on result.

Focus on:
- The main colors of the garment
- Any patterns, logos or textures transferred
- How the fabric adapts to the body

Format: Start with the main characteristic, mention the color precision, and end with a technical detail about the fit.
Example: "{example}"

OUTPUT: Return ONLY the description text in {language}. No quotes, no markdown."""

_CAPTION_LANGUAGES: dict[Locale, tuple[str, str]] = {
    Locale.PT_BR: (
        "Portuguese (Brazil)",
        "O top esportivo azul royal foi transferido com precisão, "
        "preservando o logo e adaptando-se às curvas do corpo.",
    ),
    Locale.EN: (
        "English",
        "The royal blue sports top was transferred precisely, "
        "keeping the logo and following the body's curves.",
    ),
}

# Captions shorter than this are treated as unusable
MIN_CAPTION_LENGTH = 10


def get_caption_prompt(locale: Locale = Locale.PT_BR) -> str:
    """Get the caption prompt for a locale."""
    language, example = _CAPTION_LANGUAGES.get(locale, _CAPTION_LANGUAGES[Locale.PT_BR])
    return CAPTION_PROMPT_TEMPLATE.format(language=language, example=example)
