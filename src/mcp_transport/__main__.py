"""mcp-transport entry point.

Supports: python -m mcp_transport
"""

from .cli import main

if __name__ == "__main__":
    main()
