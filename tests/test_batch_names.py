import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from labstock.core.batch_names import base_name, clean_name, name_key, next_suffix, suffix_of, suffixed


def test_clean_name_squashes_whitespace():
    assert clean_name("  Sodium   Chloride ") == "Sodium Chloride"
    assert clean_name(None) == ""


def test_base_name_strips_single_letter_suffix_only():
    assert base_name("NaCl - A") == "NaCl"
    assert base_name("NaCl  -  b") == "NaCl"
    assert base_name("Tris - HCl") == "Tris - HCl"
    assert base_name("NaCl") == "NaCl"


def test_suffix_of_and_suffixed():
    assert suffix_of("NaCl - c") == "C"
    assert suffix_of("NaCl") is None
    assert suffixed("NaCl", "b") == "NaCl - B"
    assert suffixed(" NaCl ", None) == "NaCl"


def test_name_key_is_case_and_suffix_insensitive():
    assert name_key("Sodium  Chloride - B") == name_key("sodium chloride")


def test_next_suffix_follows_greatest_used_letter():
    assert next_suffix(["NaCl"]) == "A"
    assert next_suffix(["NaCl", "NaCl - A", "NaCl - C"]) == "D"
    assert next_suffix(["NaCl - Z"]) is None
