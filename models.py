import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional

SUITS = ['D', 'C', 'H', 'S']
RANKS = ['2', '3', '4', '5', '6', '7', '8', '9', '10', 'J', 'Q', 'K', 'A']
TRUMP = 'S'

SUIT_ORDER = {s: i for i, s in enumerate(SUITS)}
RANK_ORDER = {r: i for i, r in enumerate(RANKS)}


class GameState(Enum):
    LOBBY = 'lobby'
    BIDDING = 'bidding'
    PLAYING = 'playing'
    FINISHED = 'finished'


@dataclass(frozen=True)
class Card:
    suit: str
    rank: str

    def __post_init__(self):
        if self.suit not in SUIT_ORDER:
            raise ValueError(f'Unknown suit: {self.suit!r}')
        if self.rank not in RANK_ORDER:
            raise ValueError(f'Unknown rank: {self.rank!r}')

    @property
    def code(self) -> str:
        return self.rank + self.suit

    def sort_key(self):
        return (SUIT_ORDER[self.suit], RANK_ORDER[self.rank])

    def to_dict(self):
        return {'suit': self.suit, 'rank': self.rank}

    @classmethod
    def parse(cls, raw) -> 'Card':
        """Build a card from ``{'suit': 'H', 'rank': '10'}`` or ``'10H'``."""
        if isinstance(raw, Card):
            return raw
        if isinstance(raw, dict):
            return cls(str(raw.get('suit', '')).upper(), str(raw.get('rank', '')).upper())
        if isinstance(raw, str) and len(raw.strip()) >= 2:
            text = raw.strip().upper()
            return cls(text[-1], text[:-1])
        raise ValueError(f'Cannot parse card: {raw!r}')

    def __str__(self):
        return self.code


@dataclass
class Play:
    card: Card
    player_id: str

    def to_dict(self):
        return {'card': self.card.to_dict(), 'playerId': self.player_id}


@dataclass
class Player:
    """A seat at the table.

    ``player_id`` is fixed for the life of the session; ``connection_id`` is
    whatever transport handle currently controls the seat and changes on
    reconnect.
    """
    connection_id: Optional[str]
    username: str
    player_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    hand: List[Card] = field(default_factory=list)
    bid: Optional[int] = None
    tricks_won: int = 0
    is_host: bool = False
    disconnected: bool = False
    team: Optional[str] = None

    def holds(self, card: Card) -> bool:
        return card in self.hand

    def to_dict(self):
        return {
            'id': self.player_id,
            'username': self.username,
            'isHost': self.is_host,
            'disconnected': self.disconnected,
            'bid': self.bid,
            'tricksWon': self.tricks_won,
            'handSize': len(self.hand),
            'team': self.team,
        }


@dataclass
class Team:
    name: str
    players: List[str] = field(default_factory=list)

    def to_dict(self):
        return {'name': self.name, 'players': list(self.players)}


@dataclass
class ScoreEntry:
    name: str
    score: int = 0
    bags: int = 0

    def to_dict(self):
        return {'name': self.name, 'score': self.score, 'bags': self.bags}


def new_scores() -> List[ScoreEntry]:
    return [ScoreEntry('Team 1'), ScoreEntry('Team 2')]


def players_by_id(players: List[Player]) -> Dict[str, Player]:
    return {p.player_id: p for p in players}
