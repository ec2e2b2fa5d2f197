"""
Intent extraction from the user's free-text direction.

Users describe what they want in English or Arabic ("بدون ناس", "add two
people amazed by it", "زوم ببطء"). The extractor turns that into a list of
English directives that the prompt stages append to their instructions and
to the fallback prompt, so the generated prompt is always English.

Precedence, per rule:
    1. An explicit negation phrase ("without people", "بدون ناس") suppresses.
    2. A negation particle ("no", "don't", "لا", "بدون") within NEGATION_WINDOW
       words before a request phrase, in the same clause, suppresses.
    3. Otherwise a request phrase requests.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Optional

# ── Normalisation ────────────────────────────────────────────────────────────

_ARABIC_DIACRITICS = re.compile(r"[\u064B-\u0652\u0670\u0640]")
_ARABIC_LETTERS = re.compile(r"[\u0600-\u06FF]")
# conjunction / preposition / article prefixes attached to an Arabic word
_ARABIC_PREFIX = r"(?:[وفبلك]|ال|وال|بال|لل)?"
_CLAUSE_BREAK = re.compile(r"[.,;:!?\n،؛؟]")
_ALEF_FORMS = str.maketrans({"أ": "ا", "إ": "ا", "آ": "ا", "ة": "ه", "ى": "ي"})

NEGATION_WINDOW = 2
NEGATION_PARTICLES = {
    "no", "not", "without", "dont", "don't", "never", "avoid", "remove",
    "لا", "بدون", "بلا", "مش", "بلاش", "ما",
}
# multi-word particles, matched against the joined window
NEGATION_PARTICLE_PHRASES = ("ما في", "مافي", "no more")


def normalize(text: str) -> str:
    """Lower-case, strip Arabic diacritics/tatweel and unify letter variants."""
    text = unicodedata.normalize("NFKC", text or "").lower()
    text = _ARABIC_DIACRITICS.sub("", text)
    text = text.translate(_ALEF_FORMS)
    return re.sub(r"\s+", " ", text).strip()


def detect_language(text: str) -> str:
    """'ar' for Arabic script, 'other' for any other non-Latin script, else 'en'."""
    if _ARABIC_LETTERS.search(text or ""):
        return "ar"
    for ch in text or "":
        if ch.isalpha() and ord(ch) > 0x024F:
            return "other"
    return "en"


def _is_arabic(phrase: str) -> bool:
    return bool(_ARABIC_LETTERS.search(phrase))


def _find(phrase: str, text: str) -> list[int]:
    """Start offsets of `phrase` in normalised `text`.

    Latin phrases match on word boundaries; Arabic phrases may also carry an
    attached prefix (و، ال، ب) so "والناس" still counts as "ناس".
    """
    phrase = normalize(phrase)
    if _is_arabic(phrase):
        pattern = rf"(?<!\w){_ARABIC_PREFIX}{re.escape(phrase)}(?!\w)"
        return [m.start() for m in re.finditer(pattern, text)]
    return [m.start() for m in re.finditer(rf"(?<![\w']){re.escape(phrase)}(?![\w'])", text)]


def _negated_before(text: str, offset: int, window: int) -> bool:
    clause = _CLAUSE_BREAK.split(text[:offset])[-1]
    tokens = clause.split()[-window:]
    for token in tokens:
        if token in NEGATION_PARTICLES:
            return True
        # conjunction prefix: ولا، وبدون
        if token.startswith("و") and token[1:] in NEGATION_PARTICLES:
            return True
    joined = " ".join(tokens)
    return any(p in joined for p in NEGATION_PARTICLE_PHRASES)


# ── Rules ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IntentRule:
    name: str
    phrases: tuple
    directive: str
    suppress_directive: str
    negations: tuple = ()
    video_only: bool = False


DEFAULT_RULES: tuple = (
    IntentRule(
        "people",
        phrases=("people", "person", "persons", "humans", "someone", "crowd", "family", "friends",
                 "ناس", "اشخاص", "شخص", "شخصين"),
        directive="Add people to the scene, interacting naturally with the product",
        suppress_directive="Do not include any people or human figures in the scene",
        negations=("no people", "without people", "nobody", "no one", "no humans", "empty scene",
                   "بدون ناس", "لا ناس", "ما في ناس", "بلا ناس", "بدون اشخاص", "بدون شخص"),
    ),
    IntentRule(
        "amazed",
        phrases=("amazed", "impressed", "astonished", "wowed", "excited", "منبهرين", "منبهر"),
        directive="Show the people visibly amazed and impressed by the product",
        suppress_directive="Keep facial expressions calm and neutral",
    ),
    IntentRule(
        "using",
        phrases=("using it", "using the product", "use it", "use the product", "interacting with",
                 "holding it", "holding the product", "يستعملوا", "يستخدموا", "يستعمل", "يستخدم"),
        directive="Show the product being used naturally by the people in the scene",
        suppress_directive="Do not show anyone using or holding the product",
    ),
    IntentRule(
        "bigger",
        phrases=("bigger", "larger", "enlarge", "make it big", "اكبر", "كبره", "كبر المنتج"),
        directive="Make the product noticeably larger and more prominent in the frame",
        suppress_directive="Keep the product at its natural real-world scale",
    ),
    IntentRule(
        "lighting",
        phrases=("better lighting", "improve the lighting", "improve lighting", "brighter",
                 "more light", "حسن الاضاءه", "اضاءه افضل", "اضاءه احسن"),
        directive="Improve the lighting: bright, balanced, studio-quality illumination on the product",
        suppress_directive="Keep the scene's existing lighting unchanged",
    ),
    IntentRule(
        "details",
        phrases=("more detail", "more details", "add detail", "add details", "detailed",
                 "زود التفاصيل", "تفاصيل اكثر", "تفاصيل اكتر"),
        directive="Increase fine detail and material texture fidelity on the product",
        suppress_directive="Keep detail levels simple and clean",
    ),
    IntentRule(
        "clearer",
        phrases=("clearer", "sharper", "more clear", "crisp", "اوضح"),
        directive="Make the result crisp and clear, with sharp focus on the product",
        suppress_directive="Allow a soft, slightly diffused look",
    ),
    IntentRule(
        "colors",
        phrases=("colors", "colours", "colorful", "colourful", "vibrant", "الوان", "ملون"),
        directive="Boost color richness and vibrancy while staying photorealistic",
        suppress_directive="Keep a restrained, muted color palette",
    ),
    IntentRule(
        "center",
        phrases=("in the center", "in the centre", "centered", "centred", "in the middle",
                 "في وسط", "في المنتصف", "في الوسط"),
        directive="Place the product in the center of the frame",
        suppress_directive="Use an off-center composition for the product",
    ),
    IntentRule(
        "relocate",
        phrases=("change the location", "change location", "different location", "change the place",
                 "different place", "move it", "غير المكان", "بدل المكان"),
        directive="Move the product to a different, more fitting position in the scene",
        suppress_directive="Keep the product where the scene naturally places it",
    ),
    IntentRule(
        "camera_movement",
        phrases=("camera movement", "camera motion", "moving camera", "move the camera", "pan",
                 "حركه للكاميرا", "حركه كاميرا", "حركه الكاميرا"),
        directive="Use smooth, deliberate camera movement",
        suppress_directive="Keep the camera static (locked-off shot)",
        negations=("static camera", "no camera movement", "بدون حركه"),
        video_only=True,
    ),
    IntentRule(
        "zoom",
        phrases=("zoom", "zoom in", "push in", "زوم"),
        directive="Include a slow, smooth zoom in toward the product",
        suppress_directive="Do not zoom",
        negations=("no zoom", "without zoom", "بدون زوم", "بلا زوم"),
        video_only=True,
    ),
    IntentRule(
        "orbit",
        phrases=("orbit", "360", "all sides", "every angle", "around the product", "من كل الجهات"),
        directive="Orbit the camera around the product to reveal it from all sides",
        suppress_directive="Do not orbit around the product",
        video_only=True,
    ),
    IntentRule(
        "slow",
        phrases=("slow", "slowly", "slow motion", "ببطء", "بطيء", "بطيئه"),
        directive="Keep the pacing slow and graceful",
        suppress_directive="Avoid slow, drawn-out motion",
        video_only=True,
    ),
    IntentRule(
        "fast",
        phrases=("fast", "quick", "quickly", "dynamic", "energetic", "سريعه", "سريع"),
        directive="Use fast, dynamic pacing",
        suppress_directive="Avoid fast or abrupt motion",
        video_only=True,
    ),
)

# (phrase, count), checked in order, first hit wins
PEOPLE_QUANTITIES: tuple = (
    ("one person", "1"), ("a person", "1"), ("شخص واحد", "1"),
    ("two people", "2"), ("two persons", "2"), ("a couple", "2"), ("شخصين", "2"),
    ("three people", "3"), ("ثلاثه", "3"), ("ثلاث", "3"),
    ("four people", "4"), ("اربعه", "4"),
    ("five people", "5"), ("خمسه", "5"),
    ("many people", "many"), ("a crowd", "many"), ("lots of people", "many"),
    ("ناس كثيره", "many"), ("كتير ناس", "many"), ("ناس كتير", "many"),
)

_COUNT_WORDS = {"1": "one person", "2": "two people", "3": "three people",
                "4": "four people", "5": "five people", "many": "a lively group of people"}


@dataclass
class Intents:
    language: str = "en"
    requested: list = field(default_factory=list)
    suppressed: list = field(default_factory=list)
    people_count: Optional[str] = None
    directives: list = field(default_factory=list)

    @property
    def is_english(self) -> bool:
        return self.language == "en"

    def wants(self, name: str) -> bool:
        return name in self.requested

    def forbids(self, name: str) -> bool:
        return name in self.suppressed


class IntentExtractor:
    """Rule-based extractor. Swap `rules` to change vocabulary."""

    def __init__(self, rules: tuple = DEFAULT_RULES, window: int = NEGATION_WINDOW):
        self.rules = rules
        self.window = window

    def _classify(self, rule: IntentRule, text: str) -> Optional[bool]:
        """True = requested, False = suppressed, None = not mentioned."""
        if any(_find(p, text) for p in rule.negations):
            return False

        offsets = sorted(o for p in rule.phrases for o in _find(p, text))
        if not offsets:
            return None
        if all(_negated_before(text, o, self.window) for o in offsets):
            return False
        return True

    def _people_count(self, text: str) -> Optional[str]:
        for phrase, count in PEOPLE_QUANTITIES:
            if _find(phrase, text):
                return count
        return None

    def extract(self, text: str, video: bool = False) -> Intents:
        intents = Intents(language=detect_language(text))
        normalized = normalize(text)
        if not normalized:
            return intents

        for rule in self.rules:
            if rule.video_only and not video:
                continue
            verdict = self._classify(rule, normalized)
            if verdict is None:
                continue
            if verdict:
                intents.requested.append(rule.name)
                directive = rule.directive
                if rule.name == "people":
                    intents.people_count = self._people_count(normalized)
                    if intents.people_count:
                        directive = (
                            f"Add {_COUNT_WORDS[intents.people_count]} to the scene, "
                            f"interacting naturally with the product"
                        )
                intents.directives.append(directive)
            else:
                intents.suppressed.append(rule.name)
                intents.directives.append(rule.suppress_directive)

        return intents
