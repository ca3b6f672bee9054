import argparse
import logging

import uvicorn

from common.settings import Settings
from .main import create_app


def parse_args(argv=None):
    defaults = Settings()
    parser = argparse.ArgumentParser(prog="loyalty_service", description="Loyalty points ledger")
    parser.add_argument("-a", dest="run_address", default=defaults.run_address, help="service address")
    parser.add_argument("-d", dest="database_uri", default=defaults.database_uri, help="database address")
    parser.add_argument("-r", dest="accrual_system_address", default=defaults.accrual_system_address,
                        help="accrual address")
    args = parser.parse_args(argv)
    return defaults.model_copy(update=vars(args))


def main(argv=None):
    config = parse_args(argv)
    logging.basicConfig(level=config.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host, _, port = config.run_address.rpartition(":")
    logging.getLogger(__name__).info(f"Serving on {config.run_address}, accrual at {config.accrual_system_address}")
    uvicorn.run(create_app(config), host=host or "0.0.0.0", port=int(port))


if __name__ == "__main__":
    main()
