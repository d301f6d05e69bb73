"""Allow ``python -m openai_proxy``."""

from .cli import main

if __name__ == "__main__":
    main()
