"""
Blackjack card model.

Deck creation and shuffling, hand arithmetic with soft aces, the dealer
drawing policy and outcome resolution. Everything here is pure: functions
return new lists and never mutate their arguments.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple


SUITS = ["♠", "♥", "♦", "♣"]
RANKS = ["A", "2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K"]

BLACKJACK_VALUE = 21
DEALER_STAND_VALUE = 17


class Outcome(str, Enum):
    """Result of a finished round from the player's point of view."""
    BLACKJACK = "blackjack"
    WIN = "win"
    LOSS = "loss"
    PUSH = "push"


@dataclass(frozen=True)
class Card:
    """A playing card with rank and suit."""
    rank: str  # A, 2-10, J, Q, K
    suit: str  # ♠♥♦♣

    def __post_init__(self):
        if self.rank not in RANKS:
            raise ValueError(f"Unknown rank: {self.rank!r}")
        if self.suit not in SUITS:
            raise ValueError(f"Unknown suit: {self.suit!r}")

    @property
    def value(self) -> int:
        """
        Get the value of the card.

        Face cards (J, Q, K) = 10
        Number cards = face value
        Ace = 11 (demoted to 1 in calculate_hand_value)
        """
        if self.rank in ("J", "Q", "K"):
            return 10
        elif self.rank == "A":
            return 11
        else:
            return int(self.rank)

    def to_dict(self) -> Dict[str, str]:
        return {"rank": self.rank, "suit": self.suit}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Card":
        return cls(rank=data["rank"], suit=data["suit"])

    def __str__(self) -> str:
        return f"{self.rank}{self.suit}"


@dataclass(frozen=True)
class HandValue:
    """Derived value of a hand."""
    value: int
    soft: bool
    bust: bool


@dataclass
class DealtHands:
    """Initial deal: two cards each plus the remaining deck."""
    player_hand: List[Card]
    dealer_hand: List[Card]
    deck: List[Card]


def cards_to_json(cards: Iterable[Card]) -> List[Dict[str, str]]:
    return [card.to_dict() for card in cards]


def cards_from_json(data: Optional[Iterable[Dict[str, Any]]]) -> List[Card]:
    return [Card.from_dict(item) for item in (data or [])]


def create_deck() -> List[Card]:
    """Create a standard 52-card deck in (suit, rank) order."""
    return [Card(rank, suit) for suit in SUITS for rank in RANKS]


def shuffle_deck(
    deck: Sequence[Card],
    random_func: Optional[Callable[[], float]] = None,
) -> List[Card]:
    """
    Shuffle the deck using the Fisher-Yates algorithm.

    Args:
        deck: Cards to shuffle (not modified).
        random_func: Source of floats in [0, 1); injectable for deterministic tests.

    Returns:
        A new list with the same cards in random order.
    """
    rand = random_func or random.random
    shuffled = list(deck)
    for i in range(len(shuffled) - 1, 0, -1):
        j = int(rand() * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def draw_cards(deck: Sequence[Card], count: int = 1) -> Tuple[List[Card], List[Card]]:
    """
    Draw cards from the top of the deck (the end of the list).

    If fewer than `count` cards remain, draws as many as available.

    Returns:
        (drawn, remaining) - drawn cards in draw order, and the rest of the deck.
    """
    available = max(0, min(count, len(deck)))
    if available == 0:
        return [], list(deck)
    split = len(deck) - available
    drawn = list(reversed(deck[split:]))
    return drawn, list(deck[:split])


def deal_initial_hands(deck: Sequence[Card]) -> DealtHands:
    """Deal two cards each, alternating player, dealer, player, dealer."""
    remaining = list(deck)
    player_hand: List[Card] = []
    dealer_hand: List[Card] = []

    for _ in range(2):
        drawn, remaining = draw_cards(remaining, 1)
        player_hand.extend(drawn)
        drawn, remaining = draw_cards(remaining, 1)
        dealer_hand.extend(drawn)

    return DealtHands(player_hand=player_hand, dealer_hand=dealer_hand, deck=remaining)


def calculate_hand_value(hand: Sequence[Card]) -> HandValue:
    """
    Calculate the total value of a hand.

    Aces count as 11 and are demoted to 1 one at a time while the
    total exceeds 21.
    """
    total = sum(card.value for card in hand)
    aces = sum(1 for card in hand if card.rank == "A")

    while total > BLACKJACK_VALUE and aces > 0:
        total -= 10
        aces -= 1

    return HandValue(
        value=total,
        soft=aces > 0 and total <= BLACKJACK_VALUE,
        bust=total > BLACKJACK_VALUE,
    )


def is_blackjack(hand: Sequence[Card]) -> bool:
    """A natural: exactly two cards totaling 21."""
    return len(hand) == 2 and calculate_hand_value(hand).value == BLACKJACK_VALUE


def dealer_play(dealer_hand: Sequence[Card], deck: Sequence[Card]) -> Tuple[List[Card], List[Card]]:
    """
    Complete the dealer's hand.

    The dealer draws while below 17 and stands on any 17, soft 17 included.
    Stops early if the deck runs out.

    Returns:
        (final dealer hand, remaining deck)
    """
    hand = list(dealer_hand)
    remaining = list(deck)

    while calculate_hand_value(hand).value < DEALER_STAND_VALUE:
        drawn, remaining = draw_cards(remaining, 1)
        if not drawn:
            break
        hand.extend(drawn)

    return hand, remaining


def determine_outcome(player_hand: Sequence[Card], dealer_hand: Sequence[Card]) -> Outcome:
    """
    Resolve a finished round.

    Naturals are checked first, then busts (player first), then totals.
    """
    player_bj = is_blackjack(player_hand)
    dealer_bj = is_blackjack(dealer_hand)

    if player_bj and dealer_bj:
        return Outcome.PUSH
    if player_bj:
        return Outcome.BLACKJACK
    if dealer_bj:
        return Outcome.LOSS

    player_value = calculate_hand_value(player_hand)
    dealer_value = calculate_hand_value(dealer_hand)

    if player_value.bust:
        return Outcome.LOSS
    if dealer_value.bust:
        return Outcome.WIN

    if player_value.value > dealer_value.value:
        return Outcome.WIN
    elif player_value.value < dealer_value.value:
        return Outcome.LOSS
    else:
        return Outcome.PUSH
