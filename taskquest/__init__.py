"""TaskQuest bot core: XP ledger, game sessions and the blackjack engine."""

__version__ = "1.0.0"
__status__ = "production"
