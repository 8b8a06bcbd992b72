#!/usr/bin/env python3
"""
Setup script for build-start-perf.
Installs the package, Playwright and the Chromium build it drives.
"""

import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent

STEPS = [
    ("Installing build-start-perf", [sys.executable, "-m", "pip", "install", "-e", f"{PROJECT_ROOT}[test]"]),
    ("Installing Chromium browser", [sys.executable, "-m", "playwright", "install", "chromium"]),
]


def run_step(description, args):
    """Run one install step; exit the script if it fails."""
    print(f"\n📦 {description}...")
    result = subprocess.run(args, capture_output=True, text=True)
    if result.returncode != 0:
        print(f"❌ {description} failed (exit code {result.returncode})")
        print(result.stderr or result.stdout)
        sys.exit(result.returncode)
    print(f"✅ {description} completed")


def main():
    print("🚀 Setting up build-start-perf...")

    if sys.version_info < (3, 8):
        print("❌ Python 3.8+ required")
        sys.exit(1)

    for description, args in STEPS:
        run_step(description, args)

    print("\n✅ Setup complete! From your app's directory, run:")
    print('   build-start-perf-test --url http://localhost:3000 --command "npm run dev"')


if __name__ == "__main__":
    main()
