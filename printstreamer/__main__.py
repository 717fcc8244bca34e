"""Allow running PrintStreamer with `python -m printstreamer`."""

from printstreamer.main import main

if __name__ == "__main__":
    main()
