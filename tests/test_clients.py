from client import describe, parse_card
from play_demo import estimate_bid


def test_parse_card():
    assert parse_card('10h') == {'suit': 'H', 'rank': '10'}
    assert parse_card('QS') == {'suit': 'S', 'rank': 'Q'}
    assert parse_card('zz') is None


def test_describe_tracks_names():
    names = {}
    joined = {'type': 'lobby_updated', 'data': {'players': [
        {'id': 'a1', 'username': 'Ann', 'isHost': True, 'disconnected': False},
        {'id': 'b2', 'username': 'Bo', 'isHost': False, 'disconnected': True},
    ]}}
    assert describe(joined, names) == 'Players: Ann (host) <a1>, Bo [away] <b2>'
    played = {'type': 'card_played', 'data': {'card': {'suit': 'H', 'rank': 'Q'}, 'playerId': 'b2'}}
    assert describe(played, names) == 'Bo played QH'
    assert describe({'type': 'bid_placed', 'data': {'playerId': 'a1', 'bid': 0}}, names) == 'Ann bid nil'


def test_describe_round_and_errors():
    names = {}
    ended = {'type': 'round_ended', 'data': {
        'scores': [{'name': 'Team 1', 'score': 130, 'bags': 1}, {'name': 'Team 2', 'score': -60, 'bags': 0}],
        'roundScores': [129, -60],
    }}
    assert describe(ended, names) == 'Round over: Team 1 130 (+129, 1 bags) | Team 2 -60 (-60, 0 bags)'
    assert describe({'type': 'error', 'data': {'message': 'Not your turn.'}}, names) == 'ERROR: Not your turn.'
    assert describe({'type': 'next_turn', 'data': {'nextPlayerId': 'a1'}}, names) is None


def test_estimate_bid():
    hand = [{'suit': 'S', 'rank': 'Q'}, {'suit': 'H', 'rank': 'A'}, {'suit': 'D', 'rank': '2'}]
    assert estimate_bid(hand) == 2
    assert estimate_bid([{'suit': 'D', 'rank': '3'}]) == 1
