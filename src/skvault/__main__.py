"""Allow ``python -m skvault``; the watcher is launched this way."""

from .cli import main

main()
