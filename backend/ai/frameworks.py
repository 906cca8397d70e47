"""Analysis frameworks: prompt and data-mapping tables keyed by framework.

Each built-in framework has exactly one system prompt and one mapper that
selects the questionnaire answers relevant to it. `custom` uses the caller's
prompt with the whole form.
"""
from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any


class AnalysisFramework(str, Enum):
    PATTERN = "pattern"
    GROWTH = "growth"
    CONNECTIONS = "connections"
    TAROT = "tarot"
    MANTRA = "mantra"
    HERO = "hero"
    QUEST = "quest"
    CONSTELLATION = "constellation"
    CUSTOM = "custom"


_CLOSING = "Frame what you find as possibilities to explore, not verdicts."

FRAMEWORK_PROMPTS: dict[AnalysisFramework, str] = {
    AnalysisFramework.PATTERN: (
        "You are a pattern observer reading someone's year in review. Look for the quiet themes "
        "running under the louder events, the ways different areas of life influence each other, "
        "and how past choices echo in their plans for the year ahead. Point out strengths they show "
        f"without naming. {_CLOSING}"
    ),
    AnalysisFramework.GROWTH: (
        "You are a growth architect. Map how this person's experiences built on each other: the "
        "skills earned through challenges, the support that carried them, and how those foundations "
        f"could combine into the goals they have set. {_CLOSING}"
    ),
    AnalysisFramework.CONNECTIONS: (
        "You are a relationship coach. Using the people this person mentioned, identify the "
        "relationships that shaped their year, who they want beside them in the year ahead, and a "
        "concrete way to reach out to each. Suggest a conversation starter for every person. "
        f"{_CLOSING}"
    ),
    AnalysisFramework.TAROT: (
        "You are an intuitive tarot reader. Lay out a three-part reading (past influences, present "
        "state, future pathways) that connects archetypal meanings to the specific details of their "
        f"answers. {_CLOSING}"
    ),
    AnalysisFramework.MANTRA: (
        "You are a wisdom weaver. Write a small set of short mantras drawn from what this person is "
        "reaching toward, what they are releasing and what they are becoming. Each mantra should "
        "surprise and still ring true to their answers."
    ),
    AnalysisFramework.HERO: (
        "You are a mythic storyteller. Retell this person's year as a hero's journey: departure, "
        "initiation and return, keeping their personal specifics intact and showing how their "
        "challenges served their growth."
    ),
    AnalysisFramework.QUEST: (
        "You are a quest cartographer. Turn their year into an adventure map: completed quests, "
        "companions and mentors, main quests and side quests for the year ahead, and the rewards "
        f"waiting at the end of each. {_CLOSING}"
    ),
    AnalysisFramework.CONSTELLATION: (
        "You are a celestial cartographer. Arrange their brightest moments, lessons and relationships "
        "into constellations and show how those patterns point toward the dreams and goals they "
        f"named for the year ahead. {_CLOSING}"
    ),
}


def _get(form: dict | None, *path: str) -> Any:
    node: Any = form or {}
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _map_pattern(form: dict) -> dict:
    return {
        "past": {
            "keyEvents": _get(form, "pastYear", "calendarReview"),
            "lifeSections": _get(form, "pastYear", "yearOverview"),
            "achievements": _get(form, "pastYear", "accomplishments"),
            "challenges": _get(form, "pastYear", "challenges"),
            "learnings": _get(form, "pastYear", "challenges", "lessonsLearned"),
        },
        "future": {
            "intentions": _get(form, "yearAhead", "dreamBig"),
            "lifeSections": _get(form, "yearAhead", "yearOverview"),
            "goals": _get(form, "yearAhead", "magicalTriplets", "achieveMost"),
        },
    }


def _map_growth(form: dict) -> dict:
    return {
        "foundations": {
            "pastAccomplishments": _get(form, "pastYear", "accomplishments"),
            "pastLessons": _get(form, "pastYear", "sixSentences", "biggestLesson"),
            "supportSystems": _get(form, "pastYear", "accomplishments", "helpers"),
        },
        "aspirations": {
            "futureGoals": _get(form, "yearAhead", "magicalTriplets", "achieveMost"),
            "personalGrowth": _get(form, "yearAhead", "yearOverview", "mentalHealth"),
            "plannedSupport": _get(form, "yearAhead", "magicalTriplets", "pillarsInRoughTimes"),
        },
    }


def _map_connections(form: dict) -> dict:
    return {
        "pastYear": {
            "helpers": _get(form, "pastYear", "accomplishments", "helpers"),
            "friends": _get(form, "pastYear", "yearOverview", "friends"),
            "influences": _get(form, "pastYear", "peopleWhoInfluenced"),
            "bestMoments": _get(form, "pastYear", "bestMoments"),
        },
        "yearAhead": {
            "friends": _get(form, "yearAhead", "yearOverview", "friends"),
            "pillars": _get(form, "yearAhead", "magicalTriplets", "pillarsInRoughTimes"),
        },
    }


def _map_tarot(form: dict) -> dict:
    return {
        "pastInfluences": {
            "majorEvents": _get(form, "pastYear", "calendarReview"),
            "challenges": _get(form, "pastYear", "challenges"),
            "victories": _get(form, "pastYear", "accomplishments"),
            "lessons": _get(form, "pastYear", "sixSentences", "biggestLesson"),
        },
        "presentState": {
            "currentFocus": _get(form, "yearAhead", "wordOfYear"),
            "keyIntentions": _get(form, "yearAhead", "magicalTriplets", "achieveMost"),
            "innerWork": _get(form, "yearAhead", "magicalTriplets", "loveAboutSelf"),
        },
        "futurePathways": {
            "aspirations": _get(form, "yearAhead", "dreamBig"),
            "fears": _get(form, "yearAhead", "magicalTriplets", "letGoOf"),
            "opportunities": _get(form, "yearAhead", "magicalTriplets", "dareToDiscover"),
        },
    }


def _map_mantra(form: dict) -> dict:
    return {
        "corePurpose": {
            "yearWord": _get(form, "yearAhead", "wordOfYear"),
            "secretWish": _get(form, "yearAhead", "secretWish"),
            "keyGoals": _get(form, "yearAhead", "magicalTriplets", "achieveMost"),
        },
        "personalPower": {
            "intentions": _get(form, "yearAhead", "sixSentences", "beingBrave"),
            "selfLove": _get(form, "yearAhead", "magicalTriplets", "loveAboutSelf"),
        },
        "transformations": {
            "releasing": _get(form, "yearAhead", "magicalTriplets", "letGoOf"),
            "embracing": _get(form, "yearAhead", "magicalTriplets", "dareToDiscover"),
            "becoming": _get(form, "yearAhead", "dreamBig"),
        },
    }


def _map_hero(form: dict) -> dict:
    return {
        "departure": {
            "ordinaryWorld": _get(form, "pastYear", "calendarReview"),
            "call": _get(form, "pastYear", "sixSentences", "biggestRisk"),
            "threshold": _get(form, "pastYear", "challenges"),
        },
        "initiation": {
            "trials": _get(form, "pastYear", "challenges", "howOvercome"),
            "allies": _get(form, "pastYear", "accomplishments", "helpers"),
            "transformation": _get(form, "pastYear", "sixSentences", "biggestLesson"),
        },
        "return": {
            "newPowers": _get(form, "yearAhead", "magicalTriplets", "loveAboutSelf"),
            "newWorld": _get(form, "yearAhead", "dreamBig"),
            "elixir": _get(form, "yearAhead", "secretWish"),
        },
    }


def _map_quest(form: dict) -> dict:
    return {
        "pastQuests": {
            "achievements": _get(form, "pastYear", "accomplishments"),
            "battles": _get(form, "pastYear", "challenges"),
        },
        "companions": {
            "allies": _get(form, "pastYear", "accomplishments", "helpers"),
            "mentors": _get(form, "pastYear", "peopleWhoInfluenced"),
            "futureAllies": _get(form, "yearAhead", "magicalTriplets", "pillarsInRoughTimes"),
        },
        "futureQuests": {
            "mainQuests": _get(form, "yearAhead", "magicalTriplets", "achieveMost"),
            "sideQuests": _get(form, "yearAhead", "magicalTriplets", "dareToDiscover"),
            "questRewards": _get(form, "yearAhead", "magicalTriplets", "rewardSuccesses"),
        },
    }


def _map_constellation(form: dict) -> dict:
    return {
        "brightestStars": {
            "achievements": _get(form, "pastYear", "accomplishments"),
            "moments": _get(form, "pastYear", "bestMoments"),
        },
        "starClusters": {
            "relationships": _get(form, "pastYear", "peopleWhoInfluenced"),
            "lessons": _get(form, "pastYear", "sixSentences", "biggestLesson"),
        },
        "futureStars": {
            "dreams": _get(form, "yearAhead", "dreamBig"),
            "wishes": _get(form, "yearAhead", "secretWish"),
            "goals": _get(form, "yearAhead", "magicalTriplets", "achieveMost"),
        },
    }


def _map_everything(form: dict) -> dict:
    return {
        "pastYear": _get(form, "pastYear"),
        "yearAhead": _get(form, "yearAhead"),
    }


FRAMEWORK_DATA_MAPPERS: dict[AnalysisFramework, Callable[[dict], dict]] = {
    AnalysisFramework.PATTERN: _map_pattern,
    AnalysisFramework.GROWTH: _map_growth,
    AnalysisFramework.CONNECTIONS: _map_connections,
    AnalysisFramework.TAROT: _map_tarot,
    AnalysisFramework.MANTRA: _map_mantra,
    AnalysisFramework.HERO: _map_hero,
    AnalysisFramework.QUEST: _map_quest,
    AnalysisFramework.CONSTELLATION: _map_constellation,
    AnalysisFramework.CUSTOM: _map_everything,
}

_BUILT_IN = set(AnalysisFramework) - {AnalysisFramework.CUSTOM}
if set(FRAMEWORK_PROMPTS) != _BUILT_IN:
    raise RuntimeError(f"Framework prompts out of sync: {sorted(f.value for f in _BUILT_IN ^ set(FRAMEWORK_PROMPTS))}")
if set(FRAMEWORK_DATA_MAPPERS) != set(AnalysisFramework):
    raise RuntimeError("Framework data mappers must cover every framework")


def parse_framework(value: str | None) -> AnalysisFramework:
    try:
        return AnalysisFramework((value or "").strip().lower())
    except ValueError:
        raise ValueError(f"Invalid framework: {value!r}") from None


def framework_prompt(framework: AnalysisFramework, custom_prompt: str | None = None) -> str:
    if framework is AnalysisFramework.CUSTOM:
        prompt = (custom_prompt or "").strip()
        if not prompt:
            raise ValueError("Please provide a custom prompt for analysis.")
        return prompt
    return FRAMEWORK_PROMPTS[framework]


def framework_data(framework: AnalysisFramework, form_data: dict | None) -> dict:
    return FRAMEWORK_DATA_MAPPERS[framework](form_data or {})


def framework_label(framework: AnalysisFramework | str) -> str:
    value = framework.value if isinstance(framework, AnalysisFramework) else str(framework)
    return value.replace("_", " ").title()
