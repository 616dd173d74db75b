import asyncio
import sys

if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

import tinybird_sdk.tb_cli_modules.branch
import tinybird_sdk.tb_cli_modules.cli

cli = tinybird_sdk.tb_cli_modules.cli.cli

if __name__ == "__main__":
    cli()
