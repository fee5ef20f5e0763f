"""Card helpers shared by the tests."""

from typing import List

from taskquest.services.deck import Card


def cards(*ranks: str, suit: str = "♠") -> List[Card]:
    return [Card(rank, suit) for rank in ranks]


def stacked_deck(*ranks: str) -> List[Card]:
    """
    Deck that deals the given ranks in order.

    The initial deal goes player, dealer, player, dealer; later ranks are
    drawn by hits, doubles and the dealer in that order.
    """
    return list(reversed(cards(*ranks, suit="♥")))
