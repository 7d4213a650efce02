"""
Discovery cycle scheduler.

Runs every registered skill in order, persists the rewards they return
through the RewardQueue, then expires overdue bounties. Cycles never
overlap: a cycle requested while another is running (timer tick or admin
rescan) is skipped, not queued. A skill that raises is logged and the
remaining skills still run. Between cycles the background thread runs the
housekeeping tasks every housekeeping_seconds.
"""

import logging
import threading
import time

from errors import ExternalServiceError
from models import utcnow

logger = logging.getLogger(__name__)


def make_reply_notifier(feed):
    """Notifier that posts a reward's reply text on the social feed."""
    def notify(reward):
        try:
            feed.post_update(reward.reply_text, reply_to=reward.reply_to)
        except ExternalServiceError as e:
            raise RuntimeError(e.message) from e
    return notify


class CycleScheduler:
    def __init__(self, skills, reward_queue, interval_seconds=1800, context_factory=None,
                 notifier=None, ledger=None, housekeeping=None, housekeeping_seconds=60):
        self.skills = list(skills)
        self.reward_queue = reward_queue
        self.interval_seconds = interval_seconds
        self.context_factory = context_factory
        self.notifier = notifier
        self.ledger = ledger
        self.housekeeping = list(housekeeping or [])
        self.housekeeping_seconds = housekeeping_seconds

        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None
        self.last_run = None

    @property
    def running(self):
        return self._run_lock.locked()

    def run_once(self):
        """
        One full cycle. Returns a summary dict, or None if a cycle was
        already in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("cycle skipped | reason=already running")
            return None
        try:
            return self._run_cycle()
        finally:
            self._run_lock.release()

    def _run_cycle(self):
        started = time.time()
        context = self.context_factory() if self.context_factory else None
        summary = {"started_at": started, "skills": {}, "rewards_created": 0, "bounties_expired": 0}
        logger.info("cycle started | skills=%d", len(self.skills))

        for skill in self.skills:
            try:
                rewards = skill.run(context) or []
                created = self.reward_queue.enqueue(rewards, notifier=self.notifier, skill_name=skill.name)
            except Exception as e:
                logger.exception("skill failed | skill=%s error=%s", skill.id, e)
                summary["skills"][skill.id] = {"error": str(e)}
                continue
            summary["skills"][skill.id] = {"proposed": len(rewards), "created": len(created)}
            summary["rewards_created"] += len(created)

        if self.ledger is not None:
            try:
                summary["bounties_expired"] = len(self.ledger.expire_overdue(utcnow()))
            except Exception as e:
                logger.exception("bounty expiry failed | error=%s", e)

        summary["duration_seconds"] = round(time.time() - started, 2)
        self.last_run = summary
        logger.info("cycle finished | rewards=%d expired=%d duration=%.2fs",
                    summary["rewards_created"], summary["bounties_expired"], summary["duration_seconds"])
        return summary

    # =========================================================================
    # BACKGROUND THREAD
    # =========================================================================

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="clawpay-scheduler", daemon=True)
        self._thread.start()
        logger.info("scheduler started | interval=%ss", self.interval_seconds)

    def stop(self, timeout=5):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def run_housekeeping(self):
        """Periodic maintenance (stale rate-limit windows and the like). Failures are logged."""
        for task in self.housekeeping:
            try:
                task()
            except Exception as e:
                logger.exception("housekeeping failed | task=%s error=%s", getattr(task, "__name__", task), e)

    def _loop(self):
        next_cycle = time.monotonic()
        while not self._stop.is_set():
            if time.monotonic() >= next_cycle:
                try:
                    self.run_once()
                except Exception as e:
                    logger.exception("cycle crashed | error=%s", e)
                next_cycle = time.monotonic() + self.interval_seconds
            self.run_housekeeping()
            self._stop.wait(max(0, min(self.housekeeping_seconds, next_cycle - time.monotonic())))
