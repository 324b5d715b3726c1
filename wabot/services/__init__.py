from wabot.services.cache import MemoryTier, TwoTierCache, content_hash
from wabot.services.classifier import ClassificationMethod, ClassificationResult, Example, Label, SemanticClassifier
from wabot.services.errors import ClassificationUnavailableError, InvalidPayloadError, UpstreamUnavailableError
from wabot.services.faq_service import FaqEntry, FaqMatch, FaqMatcher, MatchType
from wabot.services.pipeline import IntakePipeline, PipelineOutcome
from wabot.services.result import Result
from wabot.services.similarity import best_match, cosine_similarity
