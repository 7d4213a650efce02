from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from agent_evaluator import Evaluator
from conftest import FakeCommunity, FakeFeed, no_ai
from discovery import (
    AGENTS,
    META,
    MONITORING,
    AgentScout,
    CommunityDiscovery,
    PaymentCommands,
    SkillContext,
    SocialPulse,
    parse_payment_command,
)
from errors import ExternalServiceError
from models import PendingReward
from reward_queue import RewardQueue

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BUILDER_TEXT = "Just shipped an open-source SDK for autonomous agents on Solana, tutorial thread inside"
SPAM_TEXT = "buy now 100x guaranteed, dm me"


def _scout(store, feed, **kwargs):
    return AgentScout(store, feed, Evaluator(call_ai=no_ai), "clawpay_agent", "@clawpay_agent", **kwargs)


def _feed():
    return FakeFeed(
        authors=[
            {"id": "1", "username": "Builder_Bot", "description": ""},
            {"id": "1", "username": "Builder_Bot", "description": ""},
            {"id": "2", "username": "clawpay_agent", "description": ""},
            {"id": "3", "username": "spammer", "description": ""},
            {"id": "4", "username": "silent", "description": ""},
        ],
        posts_by_user={"1": [BUILDER_TEXT], "2": [BUILDER_TEXT], "3": [SPAM_TEXT]},
    )


def test_scout_rewards_qualifying_agents(store):
    feed = _feed()
    rewards = _scout(store, feed).run_cycle("q", max_rewards_per_cycle=3, cooldown_hours=24, now=NOW)

    assert len(rewards) == 1
    reward = rewards[0]
    assert reward.id == f"scout_builder_bot_{int(NOW.timestamp() * 1000)}"
    assert reward.recipient == "builder_bot"
    assert reward.sender == "clawpay_agent"
    assert reward.amount == Decimal(5)
    assert reward.evaluation_score == 81
    assert "@builder_bot" in reward.reply_text

    # duplicate author and the bot itself are never fetched
    assert feed.timeline_calls == ["1", "3", "4"]
    assert store.get(AGENTS, "builder_bot")["verdict"] == "REWARD"
    assert store.get(AGENTS, "spammer")["verdict"] == "REJECT"
    assert store.get(AGENTS, "silent") is None


def test_scout_respects_cooldown(store):
    feed = _feed()
    scout = _scout(store, feed)
    scout.run_cycle("q", 3, 24, now=NOW)
    calls_after_first = list(feed.timeline_calls)

    assert scout.run_cycle("q", 3, 24, now=NOW + timedelta(hours=23)) == []
    # only the never-evaluated account is looked at again
    assert feed.timeline_calls[len(calls_after_first):] == ["4"]

    later = scout.run_cycle("q", 3, 24, now=NOW + timedelta(hours=25))
    assert [r.recipient for r in later] == ["builder_bot"]
    assert later[0].id != f"scout_builder_bot_{int(NOW.timestamp() * 1000)}"


def test_scout_per_cycle_cap(store):
    authors = [{"id": str(i), "username": f"agent{i}", "description": ""} for i in range(5)]
    feed = FakeFeed(authors=authors, posts_by_user={str(i): [BUILDER_TEXT] for i in range(5)})

    rewards = _scout(store, feed).run_cycle("q", max_rewards_per_cycle=2, cooldown_hours=24, now=NOW)
    assert [r.recipient for r in rewards] == ["agent0", "agent1"]
    assert feed.timeline_calls == ["0", "1"]


def test_scout_merges_agent_record(store):
    store.set(AGENTS, "builder_bot", {"username": "builder_bot", "notes": "met at hackathon"})
    _scout(store, _feed()).run_cycle("q", 3, 24, now=NOW)
    doc = store.get(AGENTS, "builder_bot")
    assert doc["notes"] == "met at hackathon"
    assert doc["score"] == 81
    assert doc["last_evaluated_at"] == NOW.isoformat()


def test_scout_skips_when_feed_disabled(store):
    feed = _feed()
    feed.enabled = False
    assert _scout(store, feed).run(SkillContext(now=NOW)) == []


# =============================================================================
# COMMUNITY
# =============================================================================

def _post(post_id, author, content, community="aiagents", title="Agent memory"):
    return {
        "id": post_id,
        "title": title,
        "content": content,
        "submolt": {"name": community},
        "author": {"name": author, "id": f"id-{author}", "description": ""},
    }


def _discovery(store, community):
    return CommunityDiscovery(store, community, Evaluator(call_ai=no_ai), "clawpay_agent", ["aiagents"])


def test_community_filters_and_rewards(store):
    community = FakeCommunity(
        posts=[
            _post("p1", "MemBot", BUILDER_TEXT),
            _post("p2", "Elsewhere", BUILDER_TEXT, community="memes"),
            _post("p3", "Brief", "too short"),
            _post("p4", "Minter", BUILDER_TEXT + " mint now"),
            _post("p5", "clawpay_agent", BUILDER_TEXT),
        ],
        comment_response={
            "success": True,
            "verification_required": True,
            "verification": {"code": "c1", "challenge": "What is thirty two plus seven?"},
        },
    )
    rewards = _discovery(store, community).run(SkillContext(now=NOW))

    assert [r.id for r in rewards] == ["community_p1"]
    assert rewards[0].amount == Decimal(2)
    assert rewards[0].recipient == "membot"
    assert [c["post_id"] for c in community.comments] == ["p1"]
    assert community.verifications == [{"code": "c1", "answer": "39.00"}]
    assert store.get(AGENTS, "membot")["source"] == "moltbook"


def test_community_reward_stands_when_verification_fails(store):
    community = FakeCommunity(
        posts=[_post("p1", "MemBot", BUILDER_TEXT)],
        comment_response={
            "success": True,
            "verification_required": True,
            "verification": {"code": "c1", "challenge": "gibberish"},
        },
        verify_result=False,
    )
    rewards = _discovery(store, community).run(SkillContext(now=NOW))
    assert [r.id for r in rewards] == ["community_p1"]


def test_community_reward_stands_when_comment_rejected(store):
    community = FakeCommunity(posts=[_post("p1", "MemBot", BUILDER_TEXT)],
                              comment_response={"success": False, "error": "suspended"})
    rewards = _discovery(store, community).run(SkillContext(now=NOW))
    assert [r.id for r in rewards] == ["community_p1"]
    assert community.verifications == []


def test_community_scan_interval(store):
    community = FakeCommunity(posts=[_post("p1", "MemBot", BUILDER_TEXT)])
    discovery = _discovery(store, community)
    assert len(discovery.run(SkillContext(now=NOW))) == 1

    community.posts = [_post("p9", "OtherBot", BUILDER_TEXT)]
    assert discovery.run(SkillContext(now=NOW + timedelta(hours=1))) == []
    assert [r.id for r in discovery.run(SkillContext(now=NOW + timedelta(hours=3)))] == ["community_p9"]


def test_community_skips_posts_already_rewarded(store):
    RewardQueue(store).enqueue([PendingReward(id="community_p1", sender="clawpay_agent", recipient="membot",
                                              amount=Decimal("2"), source_skill_id="community_discovery")])
    community = FakeCommunity(posts=[_post("p1", "MemBot", BUILDER_TEXT), _post("p2", "OtherBot", BUILDER_TEXT),
                                     _post("../x", "Sneaky", BUILDER_TEXT)])

    rewards = _discovery(store, community).run(SkillContext(now=NOW))
    assert [r.id for r in rewards] == ["community_p2"]
    assert [c["post_id"] for c in community.comments] == ["p2"]
    assert store.get(AGENTS, "membot") is None


# =============================================================================
# PAYMENT COMMANDS
# =============================================================================

@pytest.mark.parametrize("text, expected", [
    ("@clawpay_agent send $5 to @Alice", ("alice", Decimal("5"), None)),
    ("@clawpay_agent send @bob 2.5", ("bob", Decimal("2.5"), None)),
    ("@clawpay_agent pay @carol $1", ("carol", Decimal("1"), None)),
    ("@clawpay_agent fund @dave $3 for the memory plugin", ("dave", Decimal("3"), "the memory plugin")),
    ("@clawpay_agent tip @erin 0.5", ("erin", Decimal("0.5"), None)),
])
def test_parse_payment_command(text, expected):
    command = parse_payment_command(text)
    assert (command.recipient, command.amount, command.reason) == expected


@pytest.mark.parametrize("text", ["@clawpay_agent gm", "send $0 to @bob", "send $1.1234567 to @bob", "", None])
def test_parse_payment_command_rejects(text):
    assert parse_payment_command(text) is None


def _mention(post_id, author_id, text, reference=None):
    post = {"id": post_id, "author_id": author_id, "text": text}
    if reference:
        post["referenced_tweets"] = [{"type": reference, "id": "1"}]
    return post


def _payment_feed():
    feed = FakeFeed()
    feed.mention_authors = [{"id": "10", "username": "Human_Alice"}, {"id": "11", "username": "bob"},
                            {"id": "12", "username": "clawpay_agent"}]
    feed.mention_posts = [
        _mention("100", "10", "@clawpay_agent send $5 to @builder_bot"),
        _mention("101", "10", "RT @someone: @clawpay_agent send $5 to @copycat"),
        _mention("102", "11", "@clawpay_agent send $9 to @builder_bot", reference="quoted"),
        _mention("103", "11", "@clawpay_agent tip @builder_bot 1"),
        _mention("104", "10", "@clawpay_agent send $5 to @builder_bot"),
        _mention("105", "11", "@clawpay_agent send $2 to @bob"),
        _mention("106", "12", "@clawpay_agent send $2 to @bob"),
        _mention("107", "99", "@clawpay_agent send $2 to @bob"),
    ]
    return feed


def test_payment_commands_queue_sender_funded_rewards(store):
    rewards = PaymentCommands(store, _payment_feed(), "clawpay_agent", "q").run(SkillContext(now=NOW))

    # reshares, repeats in the batch, self-payments, the bot and unknown authors are dropped
    assert [(r.id, r.sender, r.recipient, r.amount) for r in rewards] == [
        ("payment_100", "human_alice", "builder_bot", Decimal("5")),
        ("payment_103", "bob", "builder_bot", Decimal("1")),
    ]
    assert rewards[0].reply_to == "100"
    assert rewards[0].reason == "Payment from @human_alice"
    assert rewards[0].source_skill_id == "payment_commands"
    assert store.get(META, "last_seen_mention")["post_id"] == "107"


def test_payment_commands_resume_after_last_seen(store):
    feed = _payment_feed()
    skill = PaymentCommands(store, feed, "clawpay_agent", "q")
    RewardQueue(store).enqueue(skill.run(SkillContext(now=NOW)))

    feed.mention_posts += [
        _mention("108", "10", "@clawpay_agent send $5 to @builder_bot"),
        _mention("109", "10", "@clawpay_agent send $6 to @builder_bot"),
    ]
    later = skill.run(SkillContext(now=NOW + timedelta(minutes=30)))
    assert feed.mention_calls == [None, "107"]
    # 108 repeats payment_100 inside the duplicate window
    assert [r.id for r in later] == ["payment_109"]

    feed.mention_posts.append(_mention("110", "10", "@clawpay_agent send $5 to @builder_bot"))
    assert [r.id for r in skill.run(SkillContext(now=NOW + timedelta(hours=3)))] == ["payment_110"]


def test_payment_commands_skip_without_feed(store):
    feed = _payment_feed()
    feed.enabled = False
    assert PaymentCommands(store, feed, "clawpay_agent", "q").run(SkillContext(now=NOW)) == []
    assert feed.mention_calls == []


# =============================================================================
# SOCIAL PULSE
# =============================================================================

def _pulse(store, feed, community=None, **kwargs):
    kwargs.setdefault("choose", lambda amounts: amounts[-1])
    return SocialPulse(store, feed, community or FakeCommunity(), "clawpay_agent", "q", **kwargs)


def _pulse_feed():
    return FakeFeed(
        authors=[
            {"id": "1", "username": "memory_bot", "description": ""},
            {"id": "2", "username": "jane", "description": ""},
            {"id": "3", "username": "quiet_one", "description": "Autonomous trading LLM"},
            {"id": "4", "username": "sam", "description": ""},
            {"id": "5", "username": "clawpay_agent", "description": ""},
        ],
        posts=[
            {"id": "501", "author_id": "1", "text": "@clawpay_agent shipped v2 of my planner"},
            {"id": "502", "author_id": "2", "text": "@clawpay_agent check out this agent"},
            {"id": "503", "author_id": "3", "text": "@clawpay_agent hi"},
            {"id": "504", "author_id": "4", "text": "@clawpay_agent gm"},
        ],
    )


def test_social_pulse_rewards_verified_agents_at_once(store):
    community = FakeCommunity()
    community.members = {"memory_bot"}
    rewards = _pulse(store, _pulse_feed(), community).run(SkillContext(now=NOW))

    assert [(r.recipient, r.amount) for r in rewards] == [("memory_bot", Decimal("1"))]
    reward = rewards[0]
    assert reward.sender == "clawpay_agent"
    assert reward.source_skill_id == "social_pulse"
    assert reward.reply_to == "501"
    assert "@memory_bot" in reward.reply_text
    assert store.get(MONITORING, "memory_bot")["is_verified"] is True
    assert store.get(MONITORING, "quiet_one")["cycles"] == 1
    assert store.get(MONITORING, "sam")["cycles"] == 1
    assert store.get(MONITORING, "jane") is None
    assert store.get(MONITORING, "clawpay_agent") is None


def test_social_pulse_monitors_before_rewarding(store):
    pulse = _pulse(store, _pulse_feed(), min_monitoring_cycles=2)
    assert pulse.run(SkillContext(now=NOW)) == []
    assert pulse.run(SkillContext(now=NOW + timedelta(hours=1))) == []

    third = pulse.run(SkillContext(now=NOW + timedelta(hours=2)))
    assert [r.recipient for r in third] == ["memory_bot", "quiet_one"]
    assert third[1].reason == "Confirmed AI agent contributing to ecosystem"
    # uncertain accounts stay under monitoring
    assert store.get(MONITORING, "sam")["cycles"] == 3

    assert pulse.run(SkillContext(now=NOW + timedelta(hours=3))) == []
    assert store.get(MONITORING, "memory_bot")["cycles"] == 3


def test_social_pulse_per_cycle_cap(store):
    community = FakeCommunity()
    community.members = {"memory_bot", "quiet_one"}
    rewards = _pulse(store, _pulse_feed(), community, max_rewards_per_cycle=1).run(SkillContext(now=NOW))
    assert [r.recipient for r in rewards] == ["memory_bot"]


def test_social_pulse_treats_community_outage_as_unverified(store):
    class DownCommunity(FakeCommunity):
        def user_exists(self, username):
            raise ExternalServiceError("Community API unreachable")

    assert _pulse(store, _pulse_feed(), DownCommunity()).run(SkillContext(now=NOW)) == []
    assert store.get(MONITORING, "memory_bot")["on_community"] is False
