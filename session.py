"""
Spades session engine.

A ``Session`` is one game: lobby, bidding, trick play, round settlement and
game over. ``SessionManager`` owns every live session plus the mapping from
transport connections to the seat each one controls, and is the only way in:
commands arrive through ``SessionManager.handle`` and run under the owning
session's lock, one at a time.

Events leave through an ``EventSink``; delayed continuations (trick pause,
round pause, finished-game cleanup) go through a ``Scheduler`` so they can be
cancelled on teardown and ignored if the game has moved on.
"""
import logging
import random
import secrets
import string
from dataclasses import dataclass
from threading import Lock, Timer
from typing import Callable, Dict, List, Optional, Tuple

from game import Deck, cards_per_player, find_winner, settle_round, trick_winner, valid_plays
from models import Card, GameState, Play, Player, Team, TRUMP, new_scores

logger = logging.getLogger(__name__)

CODE_LENGTH = 5
CODE_ALPHABET = string.ascii_uppercase + string.digits
TABLE_SIZES = (4, 6)

TRANSITIONS = {
    GameState.LOBBY: {GameState.BIDDING},
    GameState.BIDDING: {GameState.PLAYING},
    GameState.PLAYING: {GameState.BIDDING, GameState.FINISHED},
    GameState.FINISHED: set(),
}


class CommandError(Exception):
    """A command was rejected; the message is shown to the player who sent it."""


class EventSink:
    def emit(self, connection_id: str, event_type: str, data: dict) -> None:
        raise NotImplementedError


class Scheduler:
    def schedule(self, delay: float, callback: Callable[[], None]):
        """Run ``callback`` after ``delay`` seconds. Returns a handle with ``cancel()``."""
        raise NotImplementedError


class TimerScheduler(Scheduler):
    def schedule(self, delay, callback):
        timer = Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


@dataclass
class Timing:
    trick_delay: float = 2.5
    round_delay: float = 5.0
    cleanup_delay: float = 60.0


def parse_int(value, what: str) -> int:
    if isinstance(value, bool):
        raise CommandError(f'{what} must be a whole number.')
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise CommandError(f'{what} must be a whole number.')


class Session:
    def __init__(self, code: str, max_players: int, win_score: int, sink: EventSink,
                 scheduler: Scheduler, timing: Timing,
                 on_expire: Callable[['Session'], None], rng: Optional[random.Random] = None):
        self.code = code
        self.max_players = max_players
        self.win_score = win_score
        self.players: List[Player] = []
        self.state = GameState.LOBBY
        self.teams: List[Team] = []
        self.scores = new_scores()
        self.spades_broken = False
        self.current_trick: List[Play] = []
        self.current_turn: Optional[int] = None
        self.bidding_cursor: Optional[int] = None
        self.round_number = 0
        self.trick_number = 0
        self.closed = False
        self.lock = Lock()

        self._sink = sink
        self._scheduler = scheduler
        self._timing = timing
        self._on_expire = on_expire
        self._rng = rng
        self._pending = []

    # -- roster helpers --------------------------------------------------

    def player_for(self, connection_id: str) -> Player:
        for p in self.players:
            if p.connection_id == connection_id and not p.disconnected:
                return p
        raise CommandError('You are not in this game.')

    def seat_of(self, player: Player) -> int:
        return self.players.index(player)

    def connected(self) -> List[Player]:
        return [p for p in self.players if not p.disconnected]

    def host(self) -> Optional[Player]:
        return next((p for p in self.players if p.is_host), None)

    def is_abandoned(self) -> bool:
        return not self.players or all(p.disconnected for p in self.players)

    def snapshot(self) -> dict:
        host = self.host()
        return {
            'code': self.code,
            'state': self.state.value,
            'maxPlayers': self.max_players,
            'winScore': self.win_score,
            'hostId': host.player_id if host else None,
            'players': [p.to_dict() for p in self.players],
            'teams': [t.to_dict() for t in self.teams],
            'scores': [s.to_dict() for s in self.scores],
            'spadesBroken': self.spades_broken,
            'currentTrick': [play.to_dict() for play in self.current_trick],
            'currentTurn': self._seat_id(self.current_turn),
            'biddingPlayerId': self._seat_id(self.bidding_cursor),
            'roundNumber': self.round_number,
        }

    def _seat_id(self, index: Optional[int]) -> Optional[str]:
        return self.players[index].player_id if index is not None else None

    # -- event helpers ---------------------------------------------------

    def send(self, player: Player, event_type: str, data: dict) -> None:
        if player.connection_id and not player.disconnected:
            self._sink.emit(player.connection_id, event_type, data)

    def broadcast(self, event_type: str, data: dict) -> None:
        for p in self.players:
            self.send(p, event_type, data)

    # -- lifecycle -------------------------------------------------------

    def _transition(self, new_state: GameState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f'Illegal transition {self.state.value} -> {new_state.value} in {self.code}')
        logger.info(f"Game {self.code}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _schedule(self, delay: float, callback: Callable[[], None]) -> None:
        token = (self.round_number, self.trick_number)
        handle = None

        def fire():
            with self.lock:
                if handle in self._pending:
                    self._pending.remove(handle)
                if self.closed or (self.round_number, self.trick_number) != token:
                    logger.info(f"Game {self.code}: skipped stale continuation")
                    return
                callback()

        handle = self._scheduler.schedule(delay, fire)
        self._pending.append(handle)

    def close(self) -> None:
        self.closed = True
        for handle in self._pending:
            handle.cancel()
        self._pending = []

    # -- lobby -----------------------------------------------------------

    def add_creator(self, connection_id: str, username: str) -> Player:
        player = Player(connection_id, username, is_host=True)
        self.players.append(player)
        self.send(player, 'game_created', {
            'code': self.code, 'playerId': player.player_id, 'game': self.snapshot(),
        })
        return player

    def join(self, connection_id: str, username: str) -> Player:
        returning = next((p for p in self.players if p.disconnected and p.username == username), None)
        if returning:
            return self._reconnect(returning, connection_id)

        if self.state != GameState.LOBBY:
            raise CommandError('Game has already started.')
        if len(self.players) >= self.max_players:
            raise CommandError('Game is full.')
        if any(p.username == username for p in self.players):
            raise CommandError('Username is already taken in this game.')

        player = Player(connection_id, username)
        self.players.append(player)
        logger.info(f"{username} joined game {self.code} ({len(self.players)}/{self.max_players})")
        self.send(player, 'game_joined', {
            'code': self.code, 'playerId': player.player_id, 'game': self.snapshot(),
        })
        self.broadcast('lobby_updated', self.snapshot())
        return player

    def _reconnect(self, player: Player, connection_id: str) -> Player:
        player.connection_id = connection_id
        player.disconnected = False
        logger.info(f"{player.username} reconnected to game {self.code} (seat {self.seat_of(player)})")

        self.send(player, 'game_joined', {
            'code': self.code, 'playerId': player.player_id, 'game': self.snapshot(),
        })
        self.broadcast('player_reconnected', {'playerId': player.player_id, 'username': player.username})
        self.broadcast('lobby_updated', self.snapshot())

        if self.state in (GameState.BIDDING, GameState.PLAYING):
            self._send_hand(player)
        if self.state == GameState.PLAYING and self.current_turn == self.seat_of(player):
            self._send_valid_plays(player)
        return player

    def kick(self, connection_id: str, target_id: str) -> Player:
        requester = self.player_for(connection_id)
        if not requester.is_host:
            raise CommandError('Only the host can kick players.')
        if self.state != GameState.LOBBY:
            raise CommandError('Players can only be kicked from the lobby.')
        target = next((p for p in self.players if p.player_id == target_id), None)
        if target is None:
            raise CommandError('Player not found.')
        if target is requester:
            raise CommandError('You cannot kick yourself.')

        self.players.remove(target)
        logger.info(f"{target.username} was kicked from game {self.code}")
        self.broadcast('lobby_updated', self.snapshot())
        return target

    def disconnect(self, connection_id: str) -> Optional[Player]:
        player = next((p for p in self.players if p.connection_id == connection_id and not p.disconnected), None)
        if player is None:
            return None

        if self.state == GameState.LOBBY:
            self.players.remove(player)
        else:
            player.disconnected = True

        if player.is_host:
            successor = next((p for p in self.connected() if p is not player), None)
            if successor:
                player.is_host = False
                successor.is_host = True
                logger.info(f"Host of game {self.code} passed to {successor.username}")

        logger.info(f"{player.username} disconnected from game {self.code} ({self.state.value})")
        self.broadcast('player_disconnected', {'playerId': player.player_id, 'game': self.snapshot()})
        self.broadcast('lobby_updated', self.snapshot())
        return player

    def start(self, connection_id: str) -> None:
        requester = self.player_for(connection_id)
        if not requester.is_host:
            raise CommandError('Only the host can start.')
        if self.state != GameState.LOBBY:
            raise CommandError('Game has already started.')
        if len(self.players) != self.max_players:
            raise CommandError('Lobby is not full.')
        self._start_round()

    # -- rounds ----------------------------------------------------------

    def _assign_teams(self) -> None:
        self.teams = [Team('Team 1'), Team('Team 2')]
        for i, p in enumerate(self.players):
            team = self.teams[i % 2]
            team.players.append(p.player_id)
            p.team = team.name

    def _start_round(self) -> None:
        self._transition(GameState.BIDDING)
        if not self.teams:
            self._assign_teams()

        self.round_number += 1
        self.spades_broken = False
        self.current_trick = []
        self.current_turn = None
        for p in self.players:
            p.bid = None
            p.tricks_won = 0

        deck = Deck()
        deck.shuffle(self._rng)
        for p, hand in zip(self.players, deck.deal(self.players)):
            p.hand = hand

        self.bidding_cursor = 0
        logger.info(f"Game {self.code}: round {self.round_number} dealt")
        for p in self.players:
            self._send_hand(p)
        self.broadcast('bidding_started', {
            'biddingPlayerId': self.players[0].player_id,
            'roundNumber': self.round_number,
            'players': [p.to_dict() for p in self.players],
            'teams': [t.to_dict() for t in self.teams],
        })

    def _send_hand(self, player: Player) -> None:
        self.send(player, 'hand_dealt', {
            'hand': [c.to_dict() for c in player.hand],
            'roundNumber': self.round_number,
            'players': [p.to_dict() for p in self.players],
            'teams': [t.to_dict() for t in self.teams],
            'scores': [s.to_dict() for s in self.scores],
        })

    def submit_bid(self, connection_id: str, raw_bid) -> None:
        player = self.player_for(connection_id)
        if self.state != GameState.BIDDING:
            raise CommandError('Bidding is not open.')
        if self.seat_of(player) != self.bidding_cursor:
            raise CommandError('Not your turn to bid.')
        bid = parse_int(raw_bid, 'Bid')
        limit = cards_per_player(len(self.players))
        if not 0 <= bid <= limit:
            raise CommandError(f'Bid must be between 0 and {limit}.')

        player.bid = bid
        self.broadcast('bid_placed', {'playerId': player.player_id, 'bid': bid})

        self.bidding_cursor += 1
        if self.bidding_cursor < len(self.players):
            self.broadcast('next_bidder', {
                'biddingPlayerId': self.players[self.bidding_cursor].player_id,
                'players': [p.to_dict() for p in self.players],
            })
            return

        self.bidding_cursor = None
        self._transition(GameState.PLAYING)
        self.broadcast('bidding_ended', {
            'bids': {p.player_id: p.bid for p in self.players},
            'players': [p.to_dict() for p in self.players],
        })
        # seat 0 always opens play
        self._start_trick(0)

    # -- tricks ----------------------------------------------------------

    def _start_trick(self, leader: int) -> None:
        self.trick_number += 1
        self.current_trick = []
        self.broadcast('new_trick', {
            'startingPlayerId': self.players[leader].player_id,
            'trickNumber': self.trick_number,
        })
        self._set_turn(leader)

    def _lead_suit(self) -> Optional[str]:
        return self.current_trick[0].card.suit if self.current_trick else None

    def _valid_for(self, player: Player) -> List[Card]:
        return valid_plays(player.hand, self._lead_suit(), self.spades_broken)

    def _send_valid_plays(self, player: Player) -> None:
        self.send(player, 'your_turn', {'validPlays': [c.to_dict() for c in self._valid_for(player)]})

    def _set_turn(self, index: int) -> None:
        self.current_turn = index
        player = self.players[index]
        self._send_valid_plays(player)
        self.broadcast('next_turn', {'nextPlayerId': player.player_id, 'username': player.username})

    def play_card(self, connection_id: str, raw_card) -> None:
        player = self.player_for(connection_id)
        if self.state != GameState.PLAYING:
            raise CommandError('Cards cannot be played right now.')
        if self.current_turn is None or self.seat_of(player) != self.current_turn:
            raise CommandError('Not your turn.')
        try:
            card = Card.parse(raw_card)
        except ValueError:
            raise CommandError('Invalid card played.')
        if card not in self._valid_for(player):
            raise CommandError('Invalid card played.')

        player.hand.remove(card)
        self.current_trick.append(Play(card, player.player_id))
        if card.suit == TRUMP:
            self.spades_broken = True

        self.broadcast('card_played', {
            'card': card.to_dict(),
            'playerId': player.player_id,
            'handSize': len(player.hand),
            'spadesBroken': self.spades_broken,
        })

        if len(self.current_trick) < len(self.players):
            self._set_turn((self.current_turn + 1) % len(self.players))
            return

        winner = trick_winner(self.current_trick)
        winning_player = next(p for p in self.players if p.player_id == winner.player_id)
        winning_player.tricks_won += 1
        self.current_turn = None
        logger.info(f"Game {self.code}: trick {self.trick_number} to {winning_player.username} with {winner.card}")
        self.broadcast('trick_won', {
            'winner': winner.to_dict(),
            'username': winning_player.username,
            'tricksWon': winning_player.tricks_won,
            'trickNumber': self.trick_number,
        })
        self._schedule(self._timing.trick_delay, lambda: self._after_trick(winning_player))

    def _after_trick(self, winner: Player) -> None:
        self.current_trick = []
        if any(p.hand for p in self.players):
            self._start_trick(self.seat_of(winner))
        else:
            self._end_round()

    def _end_round(self) -> None:
        round_scores = settle_round(self.teams, self.players, self.scores)
        logger.info(f"Game {self.code}: round {self.round_number} settled {round_scores}")
        self.broadcast('round_ended', {
            'scores': [s.to_dict() for s in self.scores],
            'roundScores': round_scores,
            'teams': [t.to_dict() for t in self.teams],
            'roundNumber': self.round_number,
        })

        winner = find_winner(self.scores, self.win_score)
        if winner is None:
            self._schedule(self._timing.round_delay, self._start_round)
            return

        self._transition(GameState.FINISHED)
        logger.info(f"Game {self.code}: {self.teams[winner].name} wins")
        self.broadcast('game_over', {
            'winner': self.teams[winner].name,
            'scores': [s.to_dict() for s in self.scores],
        })
        self._schedule(self._timing.cleanup_delay, lambda: self._on_expire(self))


class SessionManager:
    """Owns the live sessions and which connection controls which seat."""

    def __init__(self, sink: EventSink, scheduler: Optional[Scheduler] = None,
                 timing: Optional[Timing] = None, rng: Optional[random.Random] = None):
        self.sink = sink
        self.scheduler = scheduler or TimerScheduler()
        self.timing = timing or Timing()
        self._rng = rng
        self._sessions: Dict[str, Session] = {}
        self._connections: Dict[str, str] = {}
        self._lock = Lock()
        self._handlers = {
            'createGame': self._create_game,
            'joinGame': self._join_game,
            'kickPlayer': self._kick_player,
            'startGame': self._start_game,
            'submitBid': self._submit_bid,
            'playCard': self._play_card,
        }

    def handle(self, connection_id: str, command: str, payload: Optional[dict] = None) -> Tuple[bool, str]:
        handler = self._handlers.get(command)
        try:
            if handler is None:
                raise CommandError(f'Unknown command: {command}')
            if payload is not None and not isinstance(payload, dict):
                raise CommandError('Malformed command.')
            handler(connection_id, payload or {})
        except CommandError as e:
            logger.info(f"Rejected {command} from {connection_id}: {e}")
            self.sink.emit(connection_id, 'error', {'message': str(e)})
            return False, str(e)
        return True, 'OK'

    def get(self, code: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(str(code or '').strip().upper())

    def session_for(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            code = self._connections.get(connection_id)
            return self._sessions.get(code) if code else None

    def list_sessions(self) -> List[dict]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [{
            'code': s.code,
            'playerCount': len(s.players),
            'maxPlayers': s.max_players,
            'state': s.state.value,
        } for s in sessions]

    def disconnect(self, connection_id: str) -> None:
        with self._lock:
            code = self._connections.pop(connection_id, None)
            session = self._sessions.get(code) if code else None
        if session is None:
            return
        with session.lock:
            if session.closed:
                return
            session.disconnect(connection_id)
            if session.is_abandoned():
                self._teardown(session, 'abandoned')

    # -- internals -------------------------------------------------------

    def _require(self, payload: dict) -> Session:
        session = self.get(payload.get('code'))
        if session is None:
            raise CommandError('Game not found.')
        return session

    def _ensure_unseated(self, connection_id: str) -> None:
        # caller holds self._lock
        code = self._connections.get(connection_id)
        current = self._sessions.get(code) if code else None
        if current and current.state != GameState.FINISHED:
            raise CommandError('You are already in a game.')

    def _new_code(self) -> str:
        # caller holds self._lock
        while True:
            code = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            if code not in self._sessions:
                return code

    def _username(self, payload: dict) -> str:
        username = str(payload.get('username') or '').strip()
        if not username:
            raise CommandError('Username required.')
        return username

    def _create_game(self, connection_id: str, payload: dict) -> None:
        username = self._username(payload)
        max_players = parse_int(payload.get('maxPlayers'), 'Player count')
        if max_players not in TABLE_SIZES:
            raise CommandError('Games are for 4 or 6 players.')
        win_score = parse_int(payload.get('winScore'), 'Winning score')
        if win_score <= 0:
            raise CommandError('Winning score must be positive.')

        with self._lock:
            self._ensure_unseated(connection_id)
            code = self._new_code()
            session = Session(code, max_players, win_score, self.sink, self.scheduler,
                              self.timing, self._expire, self._rng)
            self._sessions[code] = session
            self._connections[connection_id] = code

        with session.lock:
            session.add_creator(connection_id, username)
        logger.info(f"{username} created game {code} ({max_players} players, to {win_score})")

    def _join_game(self, connection_id: str, payload: dict) -> None:
        session = self._require(payload)
        username = self._username(payload)
        with session.lock:
            if session.closed:
                raise CommandError('Game not found.')
            with self._lock:
                self._ensure_unseated(connection_id)
            session.join(connection_id, username)
            with self._lock:
                self._connections[connection_id] = session.code

    def _kick_player(self, connection_id: str, payload: dict) -> None:
        session = self._require(payload)
        with session.lock:
            target = session.kick(connection_id, payload.get('targetId'))
            with self._lock:
                if self._connections.get(target.connection_id) == session.code:
                    del self._connections[target.connection_id]
        self.sink.emit(target.connection_id, 'kicked', {
            'code': session.code, 'message': 'You have been kicked.',
        })

    def _start_game(self, connection_id: str, payload: dict) -> None:
        session = self._require(payload)
        with session.lock:
            session.start(connection_id)

    def _submit_bid(self, connection_id: str, payload: dict) -> None:
        session = self._require(payload)
        with session.lock:
            session.submit_bid(connection_id, payload.get('bid'))

    def _play_card(self, connection_id: str, payload: dict) -> None:
        session = self._require(payload)
        with session.lock:
            session.play_card(connection_id, payload.get('card'))

    def _expire(self, session: Session) -> None:
        self._teardown(session, 'finished')

    def _teardown(self, session: Session, reason: str) -> None:
        # caller holds session.lock
        session.close()
        with self._lock:
            if self._sessions.get(session.code) is session:
                del self._sessions[session.code]
            for conn, code in list(self._connections.items()):
                if code == session.code:
                    del self._connections[conn]
        logger.info(f"Game {session.code} torn down ({reason})")
