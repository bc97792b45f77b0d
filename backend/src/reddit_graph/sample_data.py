"""Deterministic sample source data for local runs and demos."""
from __future__ import annotations

import random

from sqlalchemy.orm import Session

from .models import Comment, Post, Subreddit, User


SUBREDDIT_NAMES = [
    "python",
    "datascience",
    "machinelearning",
    "programming",
    "learnpython",
    "askscience",
    "dataisbeautiful",
    "rust",
]

USER_PREFIXES = [
    "alex",
    "jordan",
    "taylor",
    "morgan",
    "casey",
    "riley",
    "avery",
    "quinn",
]

POST_TITLES = [
    "What are you working on this week?",
    "Show and tell: a small graph library",
    "Benchmarks comparing three approaches",
    "Beginner question about generators",
    "Visualizing a year of activity",
    "Lessons learned from a production outage",
]

COMMENT_SNIPPETS = [
    "Great write-up, thanks for sharing.",
    "Have you tried profiling it first?",
    "This matches what I saw as well.",
    "Could you post the dataset?",
    "Interesting, but the sample looks small.",
    "Following for updates.",
]

REPLY_SHARE = 0.3


def _pick(names: list[str], index: int) -> str:
    base = names[index % len(names)]
    round_ = index // len(names)
    return base if round_ == 0 else f"{base}{round_ + 1}"


def seed_sample_graph(
    db: Session,
    subreddits: int = 3,
    users: int = 5,
    posts: int = 20,
    comments: int = 50,
    seed: int = 42,
) -> dict:
    """
    Insert a reproducible set of subreddits, users, posts and comments.

    Posts are spread round-robin across subreddits. About REPLY_SHARE of
    comments reply to an earlier comment on the same post, the rest are
    top-level. Rows go through the ORM so change sequences are stamped.
    """
    if subreddits < 1 or users < 1:
        raise ValueError("Need at least one subreddit and one user")
    if comments and not posts:
        raise ValueError("Comments need at least one post")

    rng = random.Random(seed)

    subreddit_rows = [
        Subreddit(id=i + 1, name=_pick(SUBREDDIT_NAMES, i), title=f"r/{_pick(SUBREDDIT_NAMES, i)}",
                  subscribers=rng.randint(1_000, 500_000))
        for i in range(subreddits)
    ]
    user_rows = [User(id=i + 1, username=f"{_pick(USER_PREFIXES, i)}_{i + 1}") for i in range(users)]
    db.add_all(subreddit_rows)
    db.add_all(user_rows)
    db.flush()

    post_rows = []
    for i in range(posts):
        subreddit = subreddit_rows[i % subreddits]
        post_rows.append(Post(
            id=f"p{i + 1}",
            subreddit_id=subreddit.id,
            author_id=rng.choice(user_rows).id,
            title=rng.choice(POST_TITLES),
            score=rng.randint(0, 500),
        ))
    db.add_all(post_rows)
    db.flush()

    comment_rows = []
    by_post: dict[str, list[Comment]] = {}
    for i in range(comments):
        post = rng.choice(post_rows)
        earlier = by_post.setdefault(post.id, [])
        if earlier and rng.random() < REPLY_SHARE:
            parent_id = f"t1_{rng.choice(earlier).id}"
        else:
            parent_id = f"t3_{post.id}"
        comment = Comment(
            id=f"c{i + 1}",
            post_id=post.id,
            subreddit_id=post.subreddit_id,
            author_id=rng.choice(user_rows).id,
            parent_id=parent_id,
            body=rng.choice(COMMENT_SNIPPETS),
            score=rng.randint(-5, 100),
        )
        earlier.append(comment)
        comment_rows.append(comment)
    db.add_all(comment_rows)
    db.commit()

    return {
        "subreddits": len(subreddit_rows),
        "users": len(user_rows),
        "posts": len(post_rows),
        "comments": len(comment_rows),
    }
