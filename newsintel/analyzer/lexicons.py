"""Word lists used by the content analysis heuristics."""

KEY_POINT_INDICATORS = (
    "important", "significant", "key", "main", "primary", "crucial",
    "essential", "fundamental", "critical", "major", "breakthrough",
    "discovery", "finding", "result", "conclusion", "demonstrate",
)

EMOTION_KEYWORDS = {
    "joy": ("happy", "excited", "pleased", "delighted", "thrilled", "optimistic", "successful", "achievement"),
    "sadness": ("sad", "disappointed", "unfortunate", "tragic", "loss", "decline", "failure", "setback"),
    "anger": ("angry", "frustrated", "outraged", "furious", "criticism", "controversy", "dispute", "conflict"),
    "fear": ("worried", "concerned", "afraid", "anxious", "threat", "risk", "danger", "uncertainty"),
    "surprise": ("surprising", "unexpected", "shocking", "amazing", "breakthrough", "unprecedented", "sudden"),
    "trust": ("reliable", "trustworthy", "credible", "proven", "established", "confident", "secure"),
    "anticipation": ("upcoming", "future", "expected", "planned", "anticipate", "forecast", "potential"),
    "disgust": ("disgusting", "appalling", "terrible", "awful", "horrible", "unacceptable", "outrageous"),
}

FACTUAL_INDICATORS = (
    "is", "are", "was", "were", "has", "have", "shows", "demonstrates",
    "found", "discovered", "proves", "indicates", "reveals", "according",
)

VERIFIABLE_INDICATORS = (
    "study", "research", "report", "survey", "data", "statistics",
    "according to", "source", "published", "journal", "university",
    "expert", "scientist", "researcher", "analysis", "findings",
)

REFERENCE_TERMS = ("according to", "study", "research", "report", "source")

# (indicator label, bias type, words, count that must be exceeded, points per hit)
BIAS_GROUPS = (
    ("political language", "political",
     ("liberal", "conservative", "left-wing", "right-wing", "democrat", "republican",
      "progressive", "traditional", "radical", "extreme"), 2, 5),
    ("promotional language", "commercial",
     ("best", "amazing", "incredible", "revolutionary", "game-changing",
      "must-have", "breakthrough", "perfect", "ultimate", "superior"), 3, 3),
    ("emotional language", "emotional",
     ("outrageous", "shocking", "unbelievable", "devastating", "horrific",
      "brilliant", "genius", "stupid", "ridiculous", "absurd"), 2, 4),
    ("absolute statements", "confirmation",
     ("always", "never", "all", "none", "every", "completely", "totally",
      "absolutely", "definitely", "certainly", "obviously", "clearly"), 5, 2),
)

TRANSITION_WORDS = (
    "however", "therefore", "furthermore", "moreover", "additionally",
    "consequently", "meanwhile", "similarly", "in contrast", "on the other hand",
    "for example", "in fact", "indeed", "specifically", "particularly",
)

TOPIC_KEYWORDS = {
    "Artificial Intelligence": ("ai", "artificial", "intelligence", "machine", "learning", "neural", "network", "deep"),
    "Technology": ("technology", "software", "hardware", "computing", "digital", "cyber"),
    "Research": ("research", "study", "paper", "findings", "experiment", "dataset"),
    "Business": ("company", "market", "funding", "startup", "revenue", "investment"),
}

ORGANIZATION_SUFFIXES = (
    "Inc", "Corp", "Corporation", "Ltd", "LLC", "University", "Institute",
    "Labs", "Lab", "Foundation", "Agency", "Group", "Company",
)
