import pytest

from cgistudio.pipeline.intent import IntentExtractor, detect_language, normalize


@pytest.fixture
def extractor():
    return IntentExtractor()


def test_arabic_without_people_suppresses(extractor):
    intents = extractor.extract("بدون ناس، بس خلي الاضاءة احسن")

    assert intents.language == "ar"
    assert intents.forbids("people")
    assert intents.wants("lighting")
    assert "Do not include any people or human figures in the scene" in intents.directives


def test_english_people_with_count(extractor):
    intents = extractor.extract("Add two people amazed by it, using the product")

    assert intents.wants("people")
    assert intents.wants("amazed")
    assert intents.wants("using")
    assert intents.people_count == "2"
    assert intents.directives[0].startswith("Add two people to the scene")


def test_explicit_negation_beats_request(extractor):
    intents = extractor.extract("no people, just make it bigger")
    assert intents.forbids("people")
    assert intents.wants("bigger")


def test_negation_particle_only_reaches_its_own_clause(extractor):
    intents = extractor.extract("don't add colors. add people")
    assert intents.forbids("colors")
    assert intents.wants("people")


def test_arabic_phrase_does_not_match_inside_other_words(extractor):
    # "مناسب" contains "ناس"
    intents = extractor.extract("خلي المنتج مناسب للمكان")
    assert not intents.wants("people")
    assert not intents.forbids("people")


def test_arabic_prefixed_word_still_matches(extractor):
    intents = extractor.extract("صورة فيها والناس منبهرين")
    assert intents.wants("people")
    assert intents.wants("amazed")


def test_video_rules_only_apply_to_video(extractor):
    text = "zoom in slowly"
    assert not extractor.extract(text).wants("zoom")

    video = extractor.extract(text, video=True)
    assert video.wants("zoom")
    assert video.wants("slow")


def test_video_negations(extractor):
    intents = extractor.extract("don't zoom, static camera", video=True)
    assert intents.forbids("zoom")
    assert intents.forbids("camera_movement")


def test_arabic_video_direction(extractor):
    intents = extractor.extract("زوم ببطء", video=True)
    assert intents.wants("zoom")
    assert intents.wants("slow")


def test_empty_text_has_no_intents(extractor):
    intents = extractor.extract("")
    assert intents.requested == [] and intents.suppressed == [] and intents.directives == []


def test_detect_language():
    assert detect_language("a cozy living room") == "en"
    assert detect_language("غرفة جلوس") == "ar"
    assert detect_language("уютная комната") == "other"
    assert detect_language("café crème") == "en"


def test_normalize_unifies_arabic_letter_forms():
    assert normalize("إضاءةٌ") == normalize("اضاءه")
    assert normalize("  Bigger   PLEASE ") == "bigger please"
