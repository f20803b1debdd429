# client.py
# Simple CLI client; point SERVER_URL at a running server.py.
import os
import sys
import time
import threading

import requests

from models import Card

# Locally: http://127.0.0.1:10000
SERVER = os.environ.get("SERVER_URL", "http://127.0.0.1:10000")
POLL_INTERVAL = 0.5

HELP = """
Commands:
  /create <name> <4|6> <win score>  - create a game and become host
  /join <code> <name>               - join (or rejoin) a game
  /start                            - start the game (host, full lobby)
  /bid <n>                          - bid n tricks (0 = nil)
  /play <card>                      - play a card, e.g. /play 10H or /play AS
  /kick <player id>                 - remove a player from the lobby (host)
  /leave                            - leave the current game
  /help                             - show this help
"""


def parse_card(text):
    try:
        return Card.parse(text).to_dict()
    except ValueError:
        return None


def show_cards(cards):
    return ", ".join(Card.parse(c).code for c in cards)


def describe(event, names):
    """Turn one server event into a printable line (or None to stay quiet)."""
    t = event.get("type")
    data = event.get("data") or {}
    for p in data.get("players") or (data.get("game") or {}).get("players") or []:
        names[p["id"]] = p["username"]

    def who(pid):
        return names.get(pid, pid)

    if t in ("game_created", "game_joined"):
        game = data["game"]
        return f"In game {data['code']} as {who(data['playerId'])} ({len(game['players'])}/{game['maxPlayers']} players)"
    if t == "lobby_updated":
        return "Players: " + ", ".join(
            f"{p['username']}{' (host)' if p['isHost'] else ''}{' [away]' if p['disconnected'] else ''} <{p['id']}>"
            for p in data["players"])
    if t == "player_disconnected":
        return f"{who(data['playerId'])} disconnected"
    if t == "player_reconnected":
        return f"{data['username']} is back"
    if t == "kicked":
        return "You have been kicked."
    if t == "hand_dealt":
        return f"Round {data['roundNumber']} | Your hand: {show_cards(data['hand'])}"
    if t in ("bidding_started", "next_bidder"):
        return f"Waiting for {who(data['biddingPlayerId'])} to bid"
    if t == "bid_placed":
        return f"{who(data['playerId'])} bid {data['bid'] if data['bid'] else 'nil'}"
    if t == "bidding_ended":
        return "Bidding closed: " + ", ".join(f"{who(pid)}={bid}" for pid, bid in data["bids"].items())
    if t == "new_trick":
        return f"Trick {data['trickNumber']} led by {who(data['startingPlayerId'])}"
    if t == "your_turn":
        return f"Your turn. You may play: {show_cards(data['validPlays'])}"
    if t == "next_turn":
        return None
    if t == "card_played":
        return f"{who(data['playerId'])} played {Card.parse(data['card']).code}"
    if t == "trick_won":
        return f"{who(data['winner']['playerId'])} takes the trick with {Card.parse(data['winner']['card']).code}"
    if t == "round_ended":
        return "Round over: " + " | ".join(
            f"{s['name']} {s['score']} ({delta:+d}, {s['bags']} bags)"
            for s, delta in zip(data["scores"], data["roundScores"]))
    if t == "game_over":
        return f"GAME OVER. {data['winner']} wins!"
    if t == "error":
        return f"ERROR: {data.get('message')}"
    return f"EVENT: {event}"


class Client:
    def __init__(self, base=SERVER):
        self.base = base.rstrip("/")
        self.connection_id = None
        self.code = None
        self.names = {}
        self.latest = 0

    def post(self, path, **payload):
        payload["connection_id"] = self.connection_id
        r = requests.post(self.base + path, json=payload, timeout=10)
        body = r.json()
        if r.status_code == 200 and body.get("code"):
            self.code = body["code"]
        return r.status_code, body

    def connect(self):
        r = requests.post(self.base + "/api/connect", timeout=10)
        r.raise_for_status()
        self.connection_id = r.json()["connection_id"]

    def poll_once(self):
        r = requests.get(self.base + "/api/poll",
                         params={"connection_id": self.connection_id, "since": self.latest}, timeout=10)
        if r.status_code != 200:
            return []
        body = r.json()
        self.latest = body["latest"]
        return body["events"]

    def poll_loop(self):
        while True:
            try:
                events = self.poll_once()
            except requests.RequestException as e:
                print(f"\n[poll failed: {e}]")
                events = []
            for event in events:
                if event["type"] == "kicked":
                    self.code = None
                line = describe(event, self.names)
                if line:
                    print("\n" + line)
            time.sleep(POLL_INTERVAL)

    def run_line(self, line):
        parts = line.split()
        cmd, args = parts[0], parts[1:]
        if cmd == "/create" and len(args) == 3:
            return self.post("/api/create", username=args[0], maxPlayers=args[1], winScore=args[2])
        if cmd == "/join" and len(args) == 2:
            return self.post("/api/join", code=args[0], username=args[1])
        if cmd == "/start":
            return self.post("/api/start", code=self.code)
        if cmd == "/bid" and len(args) == 1:
            return self.post("/api/bid", code=self.code, bid=args[0])
        if cmd == "/play" and len(args) == 1:
            card = parse_card(args[0])
            if card is None:
                print("Usage: /play <rank><suit>, e.g. /play QH")
                return None
            return self.post("/api/play", code=self.code, card=card)
        if cmd == "/kick" and len(args) == 1:
            return self.post("/api/kick", code=self.code, targetId=args[0])
        if cmd == "/leave":
            result = self.post("/api/leave")
            self.code = None
            return result
        if cmd == "/help":
            print(HELP)
            return None
        print("Unknown command. Type /help.")
        return None


def main():
    client = Client()
    client.connect()
    print(HELP)
    threading.Thread(target=client.poll_loop, daemon=True).start()
    while True:
        try:
            line = input("> ")
        except EOFError:
            break
        if not line.strip():
            continue
        try:
            # rejections also arrive as error events through polling
            client.run_line(line.strip())
        except requests.RequestException as e:
            print(f"Request failed: {e}")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
