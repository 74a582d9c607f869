#!/usr/bin/env python3
"""
Toy stand-in for the ns-3 scenario: N end devices at random distances send
uplinks through one TCP connection and report delivery/energy of the last
(SF, TP) the controller assigned. Delivery is a logistic curve of a crude link
budget; it only exists to exercise the controller end to end.

  python -m lora_adr.controller_server --port 5557 &
  python examples/toy_environment.py --port 5557 --devices 10 --steps 200
"""
from __future__ import annotations
import argparse
import math
import socket
import sys

import numpy as np

from lora_adr.actions import ActionCatalog
from lora_adr.protocol import format_observation, make_framer, parse_decision

TX_CURRENT_A = 0.028
SUPPLY_V = 3.3
PAYLOAD_B = 23


def airtime_s(sf: int, payload: int = PAYLOAD_B, bw: float = 125e3) -> float:
    t_sym = (2 ** sf) / bw
    de = 1 if sf >= 11 else 0
    n = 8 + max(math.ceil((8 * payload - 4 * sf + 28 + 16) / (4 * (sf - 2 * de))) * 5, 0)
    return (12.25 + n) * t_sym


def delivery_prob(sf: int, tp: int, distance_m: float) -> float:
    # path loss exponent 3.76, 7.7 dB at 1 m; sensitivity improves ~2.5 dB per SF step
    rx = tp - (7.7 + 37.6 * math.log10(max(distance_m, 1.0)))
    margin = rx - (-124.0 - 2.5 * (sf - 7))
    return 1.0 / (1.0 + math.exp(-margin / 2.0))


def main() -> int:
    p = argparse.ArgumentParser(description="toy LoRaWAN environment client")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=5557)
    p.add_argument("--framing", choices=["length", "line"], default="length")
    p.add_argument("--devices", type=int, default=10)
    p.add_argument("--steps", type=int, default=200)
    p.add_argument("--seed", type=int, default=1)
    args = p.parse_args()

    rng = np.random.default_rng(args.seed)
    catalog = ActionCatalog()
    distances = rng.uniform(200.0, 3000.0, size=args.devices)
    last = [None] * args.devices
    framer = make_framer(args.framing)
    delivered = 0

    with socket.create_connection((args.host, args.port)) as conn:
        for step in range(args.steps):
            for d in range(args.devices):
                dev = f"ed{d}"
                if last[d] is None:
                    payload = format_observation(dev, None)
                else:
                    sf, tp = catalog.decode(last[d])
                    ok = rng.random() < delivery_prob(sf, tp, distances[d])
                    delivered += int(ok)
                    energy = TX_CURRENT_A * SUPPLY_V * airtime_s(sf) * (10 ** ((tp - 14) / 20.0))
                    payload = format_observation(dev, last[d], 1.0 if ok else 0.0, energy)
                conn.sendall(framer.encode(payload))
                frames = []
                while not frames:
                    data = conn.recv(4096)
                    if not data:
                        print("controller closed the connection")
                        return 1
                    frames = framer.feed(data)
                last[d], _ = parse_decision(frames[0])
            if (step + 1) % 50 == 0:
                pdr = delivered / float((step + 1) * args.devices)
                print(f"step {step + 1}: running PDR {pdr:.3f}")
    for d in range(args.devices):
        sf, tp = catalog.decode(last[d])
        print(f"ed{d} dist={distances[d]:6.0f}m sf: {sf} tp: {tp}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
