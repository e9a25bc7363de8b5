from __future__ import annotations

import argparse
import pprint
from dataclasses import asdict

from ladder_screener.config import build_config, load_config


def main():
    p = argparse.ArgumentParser(description="Print indicator settings and their signature for a config")
    p.add_argument("--config", help="Path to YAML config (defaults when omitted)")
    args = p.parse_args()

    cfg = load_config(args.config) if args.config else build_config()

    print("INDICATOR SETTINGS:")
    pprint.pprint(asdict(cfg.indicators))
    print(f"\nSIGNATURE: {cfg.indicators.signature()}")


if __name__ == "__main__":
    main()
