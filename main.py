import sys
from dotenv import load_dotenv

load_dotenv(override=True)

from tlsrelay.config import load_config
from tlsrelay.core import run_relay
from tlsrelay.errors import BindError, ConfigError

def main():
    try:
        config = load_config()
        run_relay(config)
    except (ConfigError, BindError) as e:
        print(f"▸ {e}", file=sys.stderr)
        sys.exit(1)

if __name__ == "__main__":
    main()
