import argparse
import random
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from spinmatch.database import Base, engine
from spinmatch.domain import PairingStatus
from spinmatch.scheduler import build_matchmaker

GENDERS = ["woman", "man", "nonbinary"]
REGIONS = ["nyc", "bos", "sf", "la", "chi"]


def seed_users(matchmaker, n_users: int, seed: int, join: bool, prefix: str) -> dict[str, int]:
    rng = random.Random(seed)
    summary = {"users": 0, "joined": 0, "paired": 0}
    for i in range(n_users):
        user_id = f"{prefix}{i:04d}"
        age = rng.randint(21, 45)
        matchmaker.set_preferences(
            user_id,
            gender=rng.choice(GENDERS),
            age=age,
            desired_gender=rng.choice(GENDERS + ["all"]),
            min_age=max(18, age - rng.randint(3, 10)),
            max_age=age + rng.randint(3, 10),
            region_tags=rng.sample(REGIONS, k=rng.randint(0, 2)),
        )
        summary["users"] += 1
        if join:
            matchmaker.heartbeat(user_id)
            result = matchmaker.request_pairing(user_id)
            summary["joined"] += 1
            if result.status == PairingStatus.PAIRED:
                summary["paired"] += 1
    return summary


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed dummy Spin Match users")
    parser.add_argument("--n-users", type=int, default=50)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--prefix", type=str, default="seed-user-")
    parser.add_argument("--join", action="store_true", help="also put every seeded user in the queue")
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)
    summary = seed_users(build_matchmaker(), args.n_users, args.seed, args.join, args.prefix)

    print("Seed completed")
    for k, v in summary.items():
        print(f"- {k}: {v}")


if __name__ == "__main__":
    main()
