from autoexit.core.position import Classification
from autoexit.utils.classification import (
    detect_misclassification, keyword_classification, resolve_classification,
)


def test_keywords():
    assert keyword_classification("binance_alpha_feed") is Classification.ALPHA
    assert keyword_classification("MEME_RADAR") is Classification.POOL
    assert keyword_classification("whales") is None
    assert keyword_classification(None) is None


def test_stored_flag_wins():
    assert resolve_classification(True, "MEME_RADAR", "0xabc") is Classification.ALPHA
    assert resolve_classification(False, "ALPHA", None) is Classification.POOL


def test_keyword_then_contract_heuristic():
    assert resolve_classification(None, "meme-signals", None) is Classification.POOL
    assert resolve_classification(None, None, None) is Classification.ALPHA
    assert resolve_classification(None, "whales", "0xabc") is Classification.UNKNOWN


def test_detect_misclassification():
    assert detect_misclassification(True, "MEME_RADAR") is False
    assert detect_misclassification(None, "ALPHA_CALLS") is True
    assert detect_misclassification(False, "MEME_RADAR") is None
    assert detect_misclassification(True, "whales") is None
