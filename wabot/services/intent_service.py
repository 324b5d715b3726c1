from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List

import yaml
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session, selectinload

from wabot.config import settings
from wabot.logging_config import get_logger
from wabot.models import Intent, IntentExample
from wabot.services.classifier import Example, Label
from wabot.services.llm.base import EmbeddingProvider, chunked

logger = get_logger("intent_service")

DEFAULT_INTENTS_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "intents.yaml"


def _to_label(intent: Intent) -> Label:
    examples = tuple(
        Example(
            text=row.text,
            embedding=tuple(row.embedding) if row.embedding else None,
            weight=float(row.weight) if row.weight is not None else 1.0,
        )
        for row in intent.examples
    )
    threshold = intent.confidence_threshold
    return Label(
        name=intent.name,
        description=intent.description or "",
        threshold=float(threshold) if threshold is not None else settings.default_label_threshold,
        examples=examples,
    )


def load_active_labels(db: Session) -> List[Label]:
    """Active labels with at least one example, ordered by name."""
    intents = (
        db.query(Intent)
        .options(selectinload(Intent.examples))
        .filter(Intent.active.is_(True))
        .order_by(Intent.name)
        .all()
    )
    labels = []
    for intent in intents:
        if not intent.examples:
            logger.warning(f"Active intent {intent.name} has no examples, skipping")
            continue
        labels.append(_to_label(intent))
    return labels


def _normalize_examples(raw_examples: Iterable) -> list[tuple[str, float]]:
    examples = []
    for item in raw_examples or []:
        if isinstance(item, str):
            text, weight = item, 1.0
        elif isinstance(item, dict):
            text, weight = item.get("text", ""), float(item.get("weight", 1.0))
        else:
            raise ValueError(f"Unsupported example: {item!r}")
        text = text.strip()
        if text:
            examples.append((text, weight))
    return examples


def bulk_load_intents(db: Session, embeddings: EmbeddingProvider, intents: List[dict]) -> dict:
    """Create or update intents and add their new examples with embeddings.

    Each item: ``{"name", "description", "threshold", "examples": [str | {"text", "weight"}]}``.
    Existing examples are kept as they are; only unseen texts are embedded.
    """
    summary = {"intents": 0, "examples_added": 0, "examples_skipped": 0}
    now = datetime.now(timezone.utc)

    for item in intents:
        name = (item.get("name") or "").strip()
        if not name:
            raise ValueError("Intent name is required")
        examples = _normalize_examples(item.get("examples"))
        if not examples:
            raise ValueError(f"Intent {name} needs at least one example")
        threshold = float(item.get("threshold", settings.default_label_threshold))
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Intent {name} threshold must be within [0, 1]")

        stmt = insert(Intent.__table__).values(
            name=name,
            description=item.get("description"),
            confidence_threshold=threshold,
            active=True,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={
                "description": stmt.excluded.description,
                "confidence_threshold": stmt.excluded.confidence_threshold,
                "active": True,
                "updated_at": now,
            },
        )
        db.execute(stmt)
        intent = db.query(Intent).filter(Intent.name == name).one()

        existing = {row.text for row in intent.examples}
        new_examples = [(text, weight) for text, weight in examples if text not in existing]
        summary["examples_skipped"] += len(examples) - len(new_examples)

        for batch in chunked(new_examples, embeddings.batch_limit):
            vectors = embeddings.embed_batch([text for text, _ in batch])
            for (text, weight), vector in zip(batch, vectors):
                db.add(IntentExample(intent_id=intent.id, text=text, embedding=vector, weight=weight))
            summary["examples_added"] += len(batch)

        summary["intents"] += 1
        logger.info(
            f"Loaded intent {name}",
            extra={"context": {"intent": name, "added": len(new_examples), "threshold": threshold}},
        )

    db.commit()
    return summary


def deactivate_intent(db: Session, name: str) -> bool:
    """Deactivate an intent and drop its examples. Returns False if unknown."""
    intent = db.query(Intent).filter(Intent.name == name).first()
    if not intent:
        return False
    intent.active = False
    intent.updated_at = datetime.now(timezone.utc)
    db.query(IntentExample).filter(IntentExample.intent_id == intent.id).delete(synchronize_session=False)
    db.commit()
    logger.info(f"Deactivated intent {name}")
    return True


def update_threshold(db: Session, name: str, threshold: float) -> bool:
    if not 0.0 <= threshold <= 1.0:
        raise ValueError("threshold must be within [0, 1]")
    intent = db.query(Intent).filter(Intent.name == name).first()
    if not intent:
        return False
    intent.confidence_threshold = threshold
    intent.updated_at = datetime.now(timezone.utc)
    db.commit()
    return True


def load_intents_file(path: Path = DEFAULT_INTENTS_PATH) -> List[dict]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    intents = data.get("intents") if isinstance(data, dict) else None
    return intents if isinstance(intents, list) else []
