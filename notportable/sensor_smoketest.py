import argparse
import sys
import time

from .config_loader import get_sensor_cfg, load_config
from .errors import SensorTimeout, SensorUnavailable
from .sensor import SAMPLER_TYPES, SensorConfig


def run_check(sampler, count: int = 5, spacing_s: float = 1.0, out=sys.stdout) -> int:
    """Take `count` readings and print each; returns how many succeeded."""
    ok = 0
    for i in range(count):
        if i:
            time.sleep(spacing_s)
        try:
            s = sampler.sample()
        except SensorTimeout as e:
            print(f"   reading {i + 1}: timeout ({e})", file=out)
            continue
        if s is None:
            print(f"   reading {i + 1}: out of range", file=out)
            continue
        ok += 1
        print(f"   reading {i + 1}: {s.value:.2f} {s.unit}", file=out)
    return ok


def main(argv=None):
    ap = argparse.ArgumentParser(description="NotPortable sensor status check")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--count", type=int, default=5)
    ap.add_argument("--spacing", type=float, default=1.0, help="Seconds between readings")
    args = ap.parse_args(argv)

    if args.config:
        cfg = SensorConfig.from_app(load_config(args.config).get("sensor", {}) or {})
    else:
        cfg = SensorConfig.from_app(get_sensor_cfg())

    cls = SAMPLER_TYPES.get(cfg.type)
    if cls is None:
        print(f"Unknown sensor type: {cfg.type!r} (expected one of {', '.join(SAMPLER_TYPES)})")
        sys.exit(2)

    sampler = cls(cfg)
    print(f"Opening {cfg.type}…")
    try:
        sampler.open()
    except SensorUnavailable as e:
        print(f"Sensor unavailable: {e}")
        sys.exit(1)

    try:
        print("Sensor status: OK")
        print(f"Check interval: {cfg.check_interval_s:.1f}s")
        print(f"Threshold:      {cfg.threshold:.1f}")
        print(f"\nTaking {args.count} test readings…")
        ok = run_check(sampler, args.count, args.spacing)
        print(f"\n{ok}/{args.count} readings succeeded")
    except KeyboardInterrupt:
        print("\nStopping…")
    finally:
        sampler.close()
        print("Closed sensor.")


if __name__ == "__main__":
    main()
