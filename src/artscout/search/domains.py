# Sites that regularly publish calls for artists
TRUSTED_DOMAINS: tuple[str, ...] = (
    "arts.gov",
    "nea.gov",
    "foundation.org",
    "artsfoundation.org",
    "artists.org",
    "gallery.org",
    "museum.org",
    "residency.org",
    "artsletter.com",
    "callforentry.org",
    "submittable.com",
    "artopportunities.org",
    "grants.org",
    "fellowship.org",
)

# Social networks, Q&A sites and marketplaces
EXCLUDED_DOMAINS: tuple[str, ...] = (
    "pinterest.com",
    "facebook.com",
    "twitter.com",
    "instagram.com",
    "linkedin.com",
    "youtube.com",
    "reddit.com",
    "quora.com",
    "answers.com",
    "yahoo.com",
    "amazon.com",
    "ebay.com",
    "craigslist.org",
)
