"""Module entry point: python -m track_review ..."""

from __future__ import annotations

from track_review.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
