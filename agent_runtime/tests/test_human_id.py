import random
import re

from agent_runtime.conversations import human_id


def test_generate_three_digit_id():
    cid = human_id.generate(lambda candidate: False, rng=random.Random(1))
    color, animal, number = cid.split("-")
    assert color in human_id.COLORS
    assert animal in human_id.ANIMALS
    assert re.fullmatch(r"\d{3}", number)


def test_generate_falls_back_to_four_digits_after_collisions():
    seen = []

    def exists(candidate):
        seen.append(candidate)
        return len(seen) <= human_id.MAX_RETRIES

    cid = human_id.generate(exists, rng=random.Random(2))
    assert len(seen) == human_id.MAX_RETRIES + 1
    assert re.fullmatch(r"[a-z]+-[a-z]+-\d{4}", cid)


def test_generate_skips_taken_ids():
    taken = set()
    for seed in range(20):
        taken.add(human_id.generate(taken.__contains__, rng=random.Random(seed % 3)))
    assert len(taken) == 20


def test_normalize():
    assert human_id.normalize("  Red-Fox-042 ") == "red-fox-042"
    assert human_id.normalize(None) == ""
