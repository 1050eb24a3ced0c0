import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from tiny_needs.needs import TinyNeeds


def fetch_profile(user_id: int) -> dict[str, Any]:
    time.sleep(0.05)  # Simulate a slow lookup
    return {"id": user_id, "name": f"user-{user_id}"}


def fetch_orders(user_id: int) -> list[int]:
    time.sleep(0.1)
    return [user_id * 10 + i for i in range(3)]


def deliver(needs: TinyNeeds, name: str) -> Callable[[Future], None]:
    """Return a done-callback that keeps `name` on success and fails `needs` otherwise."""

    def _done(future: Future) -> None:
        error = future.exception()
        if error is not None:
            needs.fail(error)
        else:
            needs.keep(name, future.result())

    return _done


def build_page(user_id: int, pool: ThreadPoolExecutor, timeout_ms: float = 1000) -> TinyNeeds:
    """Gather a profile and its orders into one TinyNeeds with slots "user" and "orders"."""
    account = TinyNeeds("profile", "orders").timeout(timeout_ms)
    pool.submit(fetch_profile, user_id).add_done_callback(deliver(account, "profile"))
    pool.submit(fetch_orders, user_id).add_done_callback(deliver(account, "orders"))

    return TinyNeeds(["user", "orders"]).take(account, {"profile": "user"})


if __name__ == "__main__":
    with ThreadPoolExecutor(max_workers=4) as pool:
        page = build_page(7, pool)
        page.on_keep(lambda values: print("kept", values))
        page.on_fail(lambda reason: print("failed", reason))
        page.wait(2)
