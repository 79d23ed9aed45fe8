import argparse
import asyncio
import os
import sys
from sqlalchemy.future import select

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.core.db import SessionLocal
from app.modules.ingestion.jobs import IngestionJobRepository
from app.modules.media.keys import MediaRole, public_url_for
from app.modules.submissions.models import Submission
from app.modules.users.models import User

async def main(dry_run: bool = False):
    """
    Queue an ingestion job for every stored image that was never processed
    (uploaded before the pipeline existed, or whose jobs all failed).
    """
    print("Scanning for unprocessed media...")
    queued = 0

    async with SessionLocal() as db:
        jobs = IngestionJobRepository(db)

        subs = await db.execute(
            select(Submission).where(Submission.image_key.is_not(None), Submission.image_processed_at.is_(None))
        )
        for sub in subs.scalars():
            print(f"  - submission {sub.id}: {sub.image_key}")
            if not dry_run:
                await jobs.enqueue(
                    public_url=public_url_for(sub.image_key),
                    role=MediaRole.SUBMISSION_IMAGE,
                    owner_id=sub.user_id,
                    submission_id=sub.id,
                )
            queued += 1

        users = await db.execute(
            select(User).where(User.profile_image_key.is_not(None), User.profile_image_processed_at.is_(None))
        )
        for user in users.scalars():
            print(f"  - profile {user.id}: {user.profile_image_key}")
            if not dry_run:
                await jobs.enqueue(
                    public_url=public_url_for(user.profile_image_key),
                    role=MediaRole.PROFILE_IMAGE,
                    owner_id=user.id,
                    submission_id=None,
                )
            queued += 1

        if dry_run:
            print(f"\nDry run: {queued} assets would be queued.")
            return
        print(f"\nCommitting {queued} ingestion jobs...")
        await db.commit()
        print("Done!")

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Queue ingestion jobs for unprocessed media")
    parser.add_argument("--dry-run", action="store_true", help="list assets without queueing jobs")
    args = parser.parse_args()
    asyncio.run(main(dry_run=args.dry_run))
