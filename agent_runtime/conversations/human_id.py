"""人类可读的会话 ID：``<color>-<animal>-<NNN>``，统一小写存储。"""

import random
from typing import Callable, Optional

COLORS = (
    "amber", "azure", "beige", "black", "blue", "bronze", "brown", "coral",
    "crimson", "cyan", "gold", "gray", "green", "indigo", "ivory", "jade",
    "khaki", "lavender", "lilac", "lime", "magenta", "maroon", "mint", "navy",
    "olive", "orange", "peach", "pink", "plum", "purple", "red", "rose",
    "ruby", "salmon", "sand", "scarlet", "silver", "tan", "teal", "violet",
    "white", "yellow",
)

ANIMALS = (
    "badger", "bear", "beaver", "bison", "camel", "cat", "cheetah", "cobra",
    "crane", "crow", "deer", "dingo", "dolphin", "eagle", "falcon", "ferret",
    "finch", "fox", "frog", "gecko", "goat", "hawk", "heron", "horse", "ibis",
    "jackal", "koala", "lemur", "lion", "llama", "lynx", "moose", "otter",
    "owl", "panda", "parrot", "puma", "rabbit", "raven", "seal", "shark",
    "sloth", "swan", "tiger", "toad", "turtle", "walrus", "whale", "wolf", "yak",
)

MAX_RETRIES = 10


def normalize(identifier: Optional[str]) -> str:
    return (identifier or "").strip().lower()


def _candidate(rng: random.Random, digits: int) -> str:
    number = rng.randint(0, 10 ** digits - 1)
    return f"{rng.choice(COLORS)}-{rng.choice(ANIMALS)}-{number:0{digits}d}"


def generate(exists: Callable[[str], bool], rng: Optional[random.Random] = None) -> str:
    """生成一个尚未被占用的 ID。

    先尝试 MAX_RETRIES 次三位数字后缀；仍冲突时改用四位后缀，
    直到 exists() 返回 False。
    """
    rng = rng or random.Random()
    for _ in range(MAX_RETRIES):
        candidate = _candidate(rng, 3)
        if not exists(candidate):
            return candidate
    while True:
        candidate = _candidate(rng, 4)
        if not exists(candidate):
            return candidate
