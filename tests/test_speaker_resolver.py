"""
Speaker Attribution Resolver 单元测试
"""

from nexus.models.catalog import Character
from nexus.services.speaker_resolver import resolve_speaker

ARIA = Character(id="c-aria", name="Aria", persona="A bard.")
BRAM = Character(id="c-bram", name="Bram", persona="A smith.")


def test_named_participant_is_attributed():
    assert resolve_speaker("[Aria]: Hello there", [ARIA, BRAM]) == "c-aria"


def test_unknown_name_is_unattributed():
    assert resolve_speaker("[Ghost]: Hi", [ARIA, BRAM]) is None


def test_no_prefix_is_unattributed():
    assert resolve_speaker("Hello there", [ARIA]) is None


def test_name_match_is_exact():
    assert resolve_speaker("[aria]: hi", [ARIA]) is None
    assert resolve_speaker("[Aria ]: hi", [ARIA]) is None


def test_multiline_body_matches():
    content = "[Bram]: *He sets down the hammer.*\n\n\"Ready.\""
    assert resolve_speaker(content, [ARIA, BRAM]) == "c-bram"


def test_duplicate_names_first_participant_wins():
    twin = Character(id="c-aria-2", name="Aria", persona="Another bard.")
    assert resolve_speaker("[Aria]: Hi", [twin, ARIA]) == "c-aria-2"
    assert resolve_speaker("[Aria]: Hi", [ARIA, twin]) == "c-aria"


def test_empty_content():
    assert resolve_speaker("", [ARIA]) is None
