"""Bundled starter content used when neither the remote store nor the cache has data."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from .models import (
    KPI,
    CompanyCode,
    DomainModel,
    Question,
    SampleAnswer,
    Subtopic,
    Topic,
    TrainingExample,
)

SEED_TIMESTAMP = datetime(2024, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class _SubtopicTemplate:
    key: str
    title: str
    description: str
    kpis: Tuple[Tuple[str, bool], ...]
    prompts: Tuple[str, ...]


@dataclass(frozen=True)
class _TopicTemplate:
    key: str
    title: str
    description: str
    subtopics: Tuple[_SubtopicTemplate, ...]


_LIBRARY: Tuple[_TopicTemplate, ...] = (
    _TopicTemplate(
        key="risk",
        title="Risk Management",
        description="Identify, assess and respond to project risks and opportunities.",
        subtopics=(
            _SubtopicTemplate(
                key="risk-identification",
                title="Risk Identification",
                description="Techniques for surfacing threats and opportunities early.",
                kpis=(("Risk register", True), ("Stakeholder workshop", False), ("Root cause", False)),
                prompts=(
                    "Describe how you would identify the key risks at the start of a new infrastructure project.",
                    "Explain which sources of information you use to build an initial risk register.",
                    "How do you involve stakeholders when identifying risks and opportunities?",
                ),
            ),
            _SubtopicTemplate(
                key="risk-response",
                title="Risk Response Planning",
                description="Selecting and monitoring responses for prioritised risks.",
                kpis=(("Mitigation", True), ("Risk owner", True), ("Contingency", False)),
                prompts=(
                    "Describe how you choose an appropriate response strategy for a high-impact risk.",
                    "Explain how you monitor the effectiveness of risk responses during delivery.",
                    "How do you assign ownership for risk responses in a cross-functional team?",
                ),
            ),
        ),
    ),
    _TopicTemplate(
        key="stakeholders",
        title="Stakeholder Management",
        description="Engage the people and organisations affected by the project.",
        subtopics=(
            _SubtopicTemplate(
                key="stakeholder-analysis",
                title="Stakeholder Analysis",
                description="Mapping interest, influence and expectations.",
                kpis=(("Stakeholder map", True), ("Influence", False), ("Expectations", False)),
                prompts=(
                    "Explain how you analyse stakeholders and prioritise your engagement efforts.",
                    "Describe a situation where stakeholder expectations conflicted and how you handled it.",
                ),
            ),
            _SubtopicTemplate(
                key="stakeholder-communication",
                title="Communication Planning",
                description="Planning the right message for the right audience.",
                kpis=(("Communication plan", True), ("Feedback", False)),
                prompts=(
                    "Describe how you build a communication plan for a project with many stakeholder groups.",
                    "How do you make sure that project communication reaches and is understood by its audience?",
                ),
            ),
        ),
    ),
)


def _slug(value: str) -> str:
    return value.lower().replace(" ", "-")


def _stamp() -> Dict[str, datetime]:
    return {"created_at": SEED_TIMESTAMP, "updated_at": SEED_TIMESTAMP}


def _build_content() -> Dict[str, List[DomainModel]]:
    topics: List[DomainModel] = []
    subtopics: List[DomainModel] = []
    questions: List[DomainModel] = []
    kpis: List[DomainModel] = []

    for topic_template in _LIBRARY:
        topic_id = f"topic_seed_{topic_template.key}"
        subtopic_ids: List[str] = []
        for subtopic_template in topic_template.subtopics:
            subtopic_id = f"subtopic_seed_{subtopic_template.key}"
            subtopic_ids.append(subtopic_id)
            subtopics.append(
                Subtopic(
                    id=subtopic_id,
                    topic_id=topic_id,
                    title=subtopic_template.title,
                    description=subtopic_template.description,
                    **_stamp(),
                )
            )
            question_ids = [
                f"question_seed_{subtopic_template.key}_{index}"
                for index in range(1, len(subtopic_template.prompts) + 1)
            ]
            kpi_ids = [f"kpi_seed_{_slug(name)}" for name, _ in subtopic_template.kpis]
            for question_id, prompt in zip(question_ids, subtopic_template.prompts):
                questions.append(
                    Question(
                        id=question_id,
                        topic_id=topic_id,
                        subtopic_id=subtopic_id,
                        prompt=prompt,
                        connected_kpis=list(kpi_ids),
                        **_stamp(),
                    )
                )
            for kpi_id, (name, essential) in zip(kpi_ids, subtopic_template.kpis):
                kpis.append(
                    KPI(
                        id=kpi_id,
                        topic_id=topic_id,
                        subtopic_id=subtopic_id,
                        name=name,
                        is_essential=essential,
                        connected_questions=list(question_ids),
                        **_stamp(),
                    )
                )
        topics.append(
            Topic(
                id=topic_id,
                title=topic_template.title,
                description=topic_template.description,
                subtopic_ids=subtopic_ids,
                **_stamp(),
            )
        )

    return {"topics": topics, "subtopics": subtopics, "questions": questions, "kpis": kpis}


def seed_collections() -> Dict[str, List[DomainModel]]:
    """Return fresh copies of every bundled collection, keyed by collection name."""
    collections = _build_content()
    collections["company_codes"] = [
        CompanyCode(
            id="company_seed_demo",
            code="DEMO2024",
            company_name="Demo Company",
            admin_email="admin@demo.example",
            max_users=50,
            **_stamp(),
        )
    ]
    collections["sample_answers"] = [
        SampleAnswer(
            id="sample_seed_risk_identification",
            question_id="question_seed_risk-identification_1",
            answer_text=(
                "I start a risk register with the core team, run a stakeholder workshop to surface "
                "threats and opportunities and analyse the root cause of each major risk."
            ),
            quality_rating=3,
            detected_kpis=["Risk register", "Stakeholder workshop", "Root cause"],
            feedback="Covers every KPI for the subtopic.",
            **_stamp(),
        )
    ]
    collections["training_examples"] = [
        TrainingExample(
            id="training_seed_risk_response",
            question_id="question_seed_risk-response_1",
            answer_text="I would pick mitigation and make sure a risk owner tracks it.",
            quality_rating=2,
            detected_kpis=["Mitigation", "Risk owner"],
            feedback="Mentions mitigation and ownership but no contingency.",
            example_type="grading",
            **_stamp(),
        )
    ]
    collections["users"] = []
    collections["subscriptions"] = []
    return collections


__all__ = ["SEED_TIMESTAMP", "seed_collections"]
