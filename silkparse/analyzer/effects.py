"""Keyword tables mapping layer and file names to print effects.

Classification is data driven: an ``EffectRule`` lists the tokens that
select an effect type and, per subtype, the tokens that select that
subtype. Matching is a case-insensitive substring test and rules are tried
in table order, so the first matching effect type wins.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

EFFECT_TYPES = ("foil", "spotUV", "emboss", "diecut", "edge")
DEFAULT_SUBTYPE = "default"
BACK_TOKENS = ("back", "rear")


@dataclass(frozen=True)
class EffectRule:
    effect_type: str
    keywords: tuple[str, ...]
    subtypes: tuple[tuple[str, tuple[str, ...]], ...] = ()

    def matches(self, name: str) -> Optional[str]:
        """Return the first keyword found in ``name``, if any."""
        for keyword in self.keywords:
            if keyword in name:
                return keyword
        return None

    def subtype_for(self, name: str) -> str:
        for subtype, tokens in self.subtypes:
            if any(token in name for token in tokens):
                return subtype
        return DEFAULT_SUBTYPE


@dataclass(frozen=True)
class EffectMatch:
    effect_type: str
    subtype: str
    side: str
    keyword: str


# Table used for declared layer names
LAYER_EFFECT_TABLE: tuple[EffectRule, ...] = (
    EffectRule(
        "foil",
        ("foil", "hot", "metallic", "gold", "silver", "copper", "rose", "holo"),
        (
            ("gold", ("gold", "golden", "yellow")),
            ("silver", ("silver", "chrome", "metallic", "white")),
            ("copper", ("copper", "bronze", "brown")),
            ("rose_gold", ("rose", "pink", "rosegold")),
            ("holographic", ("holo", "rainbow", "prismatic")),
        ),
    ),
    EffectRule(
        "spotUV",
        ("uv", "spot", "gloss", "varnish", "coating", "clear"),
        (("gloss", ("gloss", "uv", "coating", "varnish")),),
    ),
    EffectRule(
        "emboss",
        ("emboss", "raised", "deboss", "recessed", "relief", "pressed"),
        (
            ("raised", ("emboss", "raised", "relief")),
            ("recessed", ("deboss", "recessed", "pressed")),
        ),
    ),
    EffectRule(
        "diecut",
        ("die", "cut", "cutting", "outline", "trim"),
        (("through", ("die", "cut", "cutting")),),
    ),
    EffectRule(
        "edge",
        ("edge", "paint", "ink"),
        (("painted", ("paint", "ink", "color")),),
    ),
)

# Narrower table used when only the source filename is available
FILENAME_EFFECT_TABLE: tuple[EffectRule, ...] = (
    EffectRule(
        "foil",
        ("foil", "gold", "silver", "metallic", "hot"),
        (
            ("gold", ("gold",)),
            ("silver", ("silver",)),
            ("copper", ("copper",)),
            ("rose_gold", ("rose",)),
        ),
    ),
    EffectRule(
        "spotUV",
        ("uv", "gloss", "varnish", "coating"),
        (("gloss", ("uv", "gloss")),),
    ),
    EffectRule(
        "emboss",
        ("emboss", "raised", "deboss"),
        (
            ("recessed", ("deboss",)),
            ("raised", ("emboss",)),
        ),
    ),
    EffectRule("diecut", ("die", "cut", "cutting")),
)


def detect_side(name: str, back_tokens: Sequence[str] = BACK_TOKENS) -> str:
    return "back" if any(token in name for token in back_tokens) else "front"


def sanitize_name(name: str) -> str:
    """Make a layer name safe to use in an asset filename."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)


@dataclass
class EffectClassifier:
    """Classifies names against effect keyword tables.

    Attributes:
        layer_table: Rules applied to declared layer names
        filename_table: Rules applied to source filenames during fallback
        back_tokens: Tokens marking a back-side effect
    """

    layer_table: Sequence[EffectRule] = LAYER_EFFECT_TABLE
    filename_table: Sequence[EffectRule] = FILENAME_EFFECT_TABLE
    back_tokens: Sequence[str] = field(default=BACK_TOKENS)

    def _match(self, rule: EffectRule, name: str) -> Optional[EffectMatch]:
        keyword = rule.matches(name)
        if keyword is None:
            return None
        return EffectMatch(
            effect_type=rule.effect_type,
            subtype=rule.subtype_for(name),
            side=detect_side(name, self.back_tokens),
            keyword=keyword,
        )

    def classify(self, layer_name: str) -> Optional[EffectMatch]:
        """Classify a declared layer name.

        Returns:
            The first matching effect, or None for a non-effect layer
        """
        name = layer_name.lower().strip()
        for rule in self.layer_table:
            match = self._match(rule, name)
            if match:
                return match
        return None

    def classify_filename(self, filename: str) -> list[EffectMatch]:
        """Infer candidate effects from a source filename.

        Each effect type in the table contributes at most one match.
        """
        name = filename.lower()
        matches = []
        for rule in self.filename_table:
            match = self._match(rule, name)
            if match:
                matches.append(match)
        return matches
