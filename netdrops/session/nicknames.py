"""Random display names handed out to new sessions."""

import random

ADJECTIVES = ("Anonymous", "Cute", "Brave", "Quiet", "Cool")
ANIMALS = ("Rabbit", "Cat", "Puppy", "Deer", "Raccoon", "Bear", "Squirrel")


def generate_nickname(rng: random.Random | None = None) -> str:
    rng = rng or random
    return f"{rng.choice(ADJECTIVES)} {rng.choice(ANIMALS)}"
