#!/usr/bin/env python3
"""
Automated demo client for the spades server.

Usage:
  python play_demo.py [--url BASE_URL] [--win-score N]

Defaults:
  BASE_URL = http://localhost:10000
  WIN_SCORE = 100

This script will:
- Open 4 connections and create/join one game
- Start it as the host
- Bid a rough estimate for each bot (aces, kings and the high spades)
- Play the first legal card offered in each your_turn event
- Print actions and server responses until the game is over
"""
import requests
import time
import argparse
import sys

RANK_BID = {'A', 'K'}


def api_post(base, path, json):
    url = base.rstrip('/') + path
    try:
        r = requests.post(url, json=json, timeout=10)
    except requests.RequestException as e:
        return None, f"request-error: {e}"
    try:
        return r.status_code, r.json()
    except ValueError:
        return r.status_code, r.text


def api_get(base, path, params=None):
    url = base.rstrip('/') + path
    try:
        r = requests.get(url, params=params, timeout=10)
    except requests.RequestException as e:
        return None, f"request-error: {e}"
    try:
        return r.status_code, r.json()
    except ValueError:
        return r.status_code, r.text


def estimate_bid(hand):
    """Rough trick count: high cards plus high spades, at least 1."""
    tricks = 0
    for card in hand:
        if card['rank'] in RANK_BID:
            tricks += 1
        elif card['suit'] == 'S' and card['rank'] in ('Q', 'J'):
            tricks += 1
    return max(1, tricks)


def connect_bots(base, names):
    bots = []
    for name in names:
        status, body = api_post(base, '/api/connect', {})
        if status != 200:
            raise RuntimeError(f"Connect failed for {name}: {status} {body}")
        bots.append({'name': name, 'connection_id': body['connection_id'], 'latest': 0, 'hand': []})
    return bots


def poll(base, bot):
    status, body = api_get(base, '/api/poll', {'connection_id': bot['connection_id'], 'since': bot['latest']})
    if status != 200 or not isinstance(body, dict):
        return []
    bot['latest'] = body['latest']
    return body['events']


def demo_run(base, win_score):
    bots = connect_bots(base, [f"Bot{i+1}" for i in range(4)])
    host = bots[0]

    status, body = api_post(base, '/api/create', {
        'connection_id': host['connection_id'], 'username': host['name'],
        'maxPlayers': 4, 'winScore': win_score,
    })
    if status != 200:
        raise RuntimeError(f"Create failed: {status} {body}")
    code = body['code']
    print(f"[create] {host['name']} created game {code}")

    for bot in bots[1:]:
        status, body = api_post(base, '/api/join', {
            'connection_id': bot['connection_id'], 'code': code, 'username': bot['name'],
        })
        print(f"[join] {bot['name']} status {status}")

    status, body = api_post(base, '/api/start', {'connection_id': host['connection_id'], 'code': code})
    print(f"[start] status {status} res={body}")

    started = time.time()
    while time.time() - started < 600:
        for bot in bots:
            for event in poll(base, bot):
                kind, data = event['type'], event['data']
                if kind == 'hand_dealt':
                    bot['hand'] = data['hand']
                elif kind in ('bidding_started', 'next_bidder') and data['biddingPlayerId'] == bot.get('player_id'):
                    bid = estimate_bid(bot['hand'])
                    st, res = api_post(base, '/api/bid', {'connection_id': bot['connection_id'], 'code': code, 'bid': bid})
                    print(f"[bid] {bot['name']} bids {bid} ({st})")
                elif kind in ('game_created', 'game_joined'):
                    bot['player_id'] = data['playerId']
                elif kind == 'your_turn':
                    card = data['validPlays'][0]
                    st, res = api_post(base, '/api/play', {'connection_id': bot['connection_id'], 'code': code, 'card': card})
                    print(f"[play] {bot['name']} plays {card['rank']}{card['suit']} ({st})")
                elif kind == 'round_ended' and bot is host:
                    print(f"[round] scores={data['scores']} deltas={data['roundScores']}")
                elif kind == 'game_over' and bot is host:
                    print(f"[demo] game over, {data['winner']} wins: {data['scores']}")
                    return
                elif kind == 'error':
                    print(f"[error] {bot['name']}: {data['message']}")
        time.sleep(0.3)

    print("[demo] gave up waiting for the game to finish")


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--url', default='http://localhost:10000', help='Base URL for server (default http://localhost:10000)')
    parser.add_argument('--win-score', type=int, default=100, help='Score needed to win (default 100)')
    args = parser.parse_args()
    try:
        demo_run(args.url, args.win_score)
    except KeyboardInterrupt:
        print("Interrupted by user", file=sys.stderr)
        sys.exit(0)
    except Exception as e:
        print("Demo failed:", e, file=sys.stderr)
        sys.exit(1)
