import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

from models import Card, Play, Player, ScoreEntry, Team, SUITS, RANKS, RANK_ORDER, TRUMP, players_by_id

NIL_BONUS = 100
POINTS_PER_BID = 10
BAG_LIMIT = 10
BAG_PENALTY = 100


def cards_per_player(num_players: int) -> int:
    return 8 if num_players == 6 else 13


def sort_hand(hand: List[Card]) -> List[Card]:
    return sorted(hand, key=Card.sort_key)


class Deck:
    def __init__(self):
        self.cards: List[Card] = [Card(s, r) for s in SUITS for r in RANKS]

    def shuffle(self, rng: Optional[random.Random] = None):
        (rng or random).shuffle(self.cards)

    def deal(self, players: Sequence) -> List[List[Card]]:
        # one card per player per pass; leftovers stay in the deck
        num_players = len(players)
        per_player = cards_per_player(num_players)
        hands: List[List[Card]] = [[] for _ in range(num_players)]
        for i in range(per_player * num_players):
            hands[i % num_players].append(self.cards[i])
        self.cards = self.cards[per_player * num_players:]
        return [sort_hand(h) for h in hands]


def trick_winner(trick: Sequence[Play]) -> Play:
    if not trick:
        raise ValueError('Cannot evaluate an empty trick')
    lead_suit = trick[0].card.suit
    trumps = [p for p in trick if p.card.suit == TRUMP]
    contenders = trumps or [p for p in trick if p.card.suit == lead_suit]
    return max(contenders, key=lambda p: RANK_ORDER[p.card.rank])


def valid_plays(hand: Sequence[Card], lead_suit: Optional[str], spades_broken: bool) -> List[Card]:
    if lead_suit:
        following = [c for c in hand if c.suit == lead_suit]
        if following:
            return following

    # spades can't be led until broken, unless that's all the player holds
    if not lead_suit and not spades_broken:
        non_trump = [c for c in hand if c.suit != TRUMP]
        if non_trump:
            return non_trump

    return list(hand)


@dataclass
class RoundResult:
    round_score: int
    round_bags: int

    @property
    def display_score(self) -> int:
        return self.round_score - self.round_bags


def score_team(members: Sequence[Player]) -> RoundResult:
    """Score one team's round from its members' bids and tricks.

    Nil bids are settled individually. Every trick the team took, including
    tricks taken by a failed nil, counts toward the combined standard bid.
    """
    round_score = 0
    round_bags = 0
    team_bid = 0
    team_tricks = 0

    for player in members:
        if player.bid is None:
            raise ValueError(f'{player.username} reached scoring without a bid')
        team_tricks += player.tricks_won
        if player.bid == 0:
            if player.tricks_won == 0:
                round_score += NIL_BONUS
            else:
                round_score -= NIL_BONUS
                round_bags += player.tricks_won
        else:
            team_bid += player.bid

    if team_bid > 0:
        if team_tricks >= team_bid:
            round_score += team_bid * POINTS_PER_BID
            round_bags += team_tricks - team_bid
        else:
            round_score -= team_bid * POINTS_PER_BID

    return RoundResult(round_score, round_bags)


def apply_result(entry: ScoreEntry, result: RoundResult) -> None:
    entry.bags += result.round_bags
    while entry.bags >= BAG_LIMIT:
        entry.score -= BAG_PENALTY
        entry.bags -= BAG_LIMIT
    entry.score += result.round_score


def settle_round(teams: Sequence[Team], players: Sequence[Player], scores: Sequence[ScoreEntry]) -> List[int]:
    by_id = players_by_id(players)
    deltas = []
    for team, entry in zip(teams, scores):
        members = [by_id[pid] for pid in team.players if pid in by_id]
        result = score_team(members)
        apply_result(entry, result)
        deltas.append(result.display_score)
    return deltas


def find_winner(scores: Sequence[ScoreEntry], win_score: int) -> Optional[int]:
    # first team in order wins a simultaneous crossing
    for index, entry in enumerate(scores):
        if entry.score >= win_score:
            return index
    return None
