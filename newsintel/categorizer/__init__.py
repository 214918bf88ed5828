"""Content categorization package.

- rules: category vocabulary, keyword/pattern rules, method selection
- engine: keyword, embedding, AI and hybrid categorization
"""

from .engine import BatchCategorizationResult, CategorizationEngine, CategorizationResult, CategoryPrediction
from .rules import CATEGORY_VOCABULARY, CategorizationMethod, CategoryRule, TextFeatures, select_method
