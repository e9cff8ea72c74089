# Domain synonym table for search expansion: canonical term -> variants.
# Lookups work both ways (a variant expands to its canonical term and siblings).
SYNONYMS = {
    # Common misspellings
    "javascript": ["javascrpt", "javascipt", "javascrip", "javascrit", "javscript", "js", "ecmascript", "node", "nodejs"],
    "python": ["pyton", "pythn", "pytho", "phyton", "pithon", "py"],
    "react": ["rect", "recat", "reactjs", "react.js"],
    "angular": ["anglar", "angulr", "anguler", "angularjs"],
    "database": ["databse", "datbase", "datebase", "databas", "db", "sql", "nosql", "mongodb", "postgres"],
    "algorithm": ["algoritm", "algorith", "algorthm", "algorithem"],
    "analytics": ["analtics", "analyics", "anlytics", "analitycs", "metrics", "insights", "statistics"],
    "marketing": ["markting", "marketng", "marketting", "marketin", "promotion", "advertising", "growth", "seo"],
    "ecommerce": ["ecomerce", "ecommerc", "ecomerse", "ecommerece", "online store", "shop", "retail", "marketplace"],
    "freelance": ["freelanc", "frelanc", "freelence", "freelnce", "contractor", "gig"],
    "product": ["prodct", "pruduct", "prodict", "produckt", "item", "solution", "tool"],
    "design": ["desing", "desig", "dezign", "designe", "ui", "ux", "graphic", "figma", "sketch"],
    "development": ["developent", "developmnt", "devlopment", "developmet", "coding", "programming", "engineering"],
    "software": ["sofware", "softwar", "softwre", "softwere"],
    "technology": ["technolgy", "tecnology", "techology", "technoloy", "tech"],
    "business": ["busines", "bussiness", "busness", "buisness", "company", "enterprise"],
    "startup": ["startap", "startop", "startp", "startapp", "venture"],
    "finance": ["financ", "finace", "finanse", "finence", "fintech", "banking", "payment"],
    "education": ["educaton", "educatin", "eduction", "educasion", "learning", "courses", "training", "edtech"],
    "health": ["helth", "healt", "healh", "heallth", "healthcare", "wellness", "medical"],
    "fitness": ["fitnes", "fittness", "fitess", "fitnees"],
    "mobile": ["mobil", "moble", "mobiel", "mobileapp", "ios", "android", "smartphone"],
    "application": ["applicaton", "applicatin", "aplication", "aplicaton", "app", "program"],
    "website": ["websit", "webste", "webite", "wbsite", "webapp"],
    "cloud": ["clod", "cloude", "clould", "clud", "aws", "azure", "gcp", "hosting"],
    "security": ["securty", "securit", "secrity", "securety", "encryption", "privacy", "authentication"],
    "network": ["netwrk", "netork", "netwok", "nework"],
    "artificial": ["artifical", "artifcial", "artficial", "artifisial"],
    "intelligence": ["inteligence", "intellgence", "inteligenc", "intelligenc"],
    "machine": ["machin", "machne", "machien", "macchine"],
    # Tech terms
    "typescript": ["ts"],
    "vue": ["vuejs", "vue.js"],
    "ai": ["artificial intelligence", "machine learning", "ml", "deep learning", "llm"],
    "api": ["rest", "graphql", "endpoint", "sdk"],
    "saas": ["software as a service", "subscription"],
    # Business terms
    "remote": ["wfh", "work from home", "telecommute"],
    "productivity": ["efficiency", "workflow", "automation"],
    "collaboration": ["teamwork", "cooperation", "coordination"],
    "communication": ["chat", "messaging", "email", "conferencing"],
    "gaming": ["games", "esports"],
    "social": ["community", "sharing"],
    # Plurals and variations
    "tools": ["tool", "utility", "utilities"],
    "developers": ["developer", "programmer", "coder", "engineer"],
    "designers": ["designer", "creative", "artist"],
}


def _reverse(table):
    out = {}
    for canonical, variants in table.items():
        for v in variants:
            out.setdefault(v, []).append(canonical)
    return out


REVERSE = _reverse(SYNONYMS)
