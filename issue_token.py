"""Issue an `x-auth-token` credential for a scan owner.

Authentication screens are not part of this service, so credentials for field
devices are created by an operator. It reuses the same `DATABASE_DIR` behavior
as the application via `utils.database_init.AsyncDatabaseInitializer`.

Run: set the `DATABASE_DIR` environment variable and run
      `python issue_token.py <owner_id>`.
"""
import argparse
import asyncio

from dotenv import load_dotenv

from dal.token_dal import TokenDAL
from utils.database_init import AsyncDatabaseInitializer


async def main(owner_id: str) -> None:
    """Ensure the DB exists, then print a fresh token for `owner_id`."""
    initializer = AsyncDatabaseInitializer()
    token = await TokenDAL(initializer).issue_token(owner_id)
    print(token)


if __name__ == "__main__":
    load_dotenv()
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("owner_id", help="Identifier of the user the token belongs to")
    args = parser.parse_args()
    asyncio.run(main(args.owner_id))
