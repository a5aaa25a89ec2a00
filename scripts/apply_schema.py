#!/usr/bin/env python3
"""Apply the job queue schema: job_queue and job_queue_state tables."""
import asyncio
import asyncpg
import os

from jobqueue.drivers.schema import SCHEMA


async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(SCHEMA)
        print("Job queue schema applied")

        # Verify
        for table in ("job_queue", "job_queue_state"):
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM information_schema.columns WHERE table_name = $1",
                table,
            )
            print(f"{table} has {count} columns")
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(main())
