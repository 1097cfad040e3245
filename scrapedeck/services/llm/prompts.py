from __future__ import annotations

SCRAPE_PROMPT_TEMPLATE = """
You are a web scraping AI assistant. Your task is to extract structured data from web content.

URL to scrape: {url}
Task: {task}
{vision_note}
Please provide the extracted data in a clean JSON format. If you cannot access the actual webpage content, provide a structured template of what data would be extracted based on the scraping task.

Response format should be valid JSON with relevant fields based on the scraping type.
"""

VISION_NOTE = "Visual analysis requested: consider layout and visual cues (images, badges, highlighted prices) when extracting.\n"

CONNECTION_TEST_PROMPT = 'Hello, can you respond with just "OK"?'

PROMPT_TEMPLATES: dict[str, str] = {
    "general": """Extract all relevant information from this webpage. Focus on:
- Main content or data
- Important details and specifications
- Contact information if available
- Any structured data or lists
Return the data in a clean JSON format.""",
    "product": """Extract comprehensive product information including:
- Product name/title
- Price (current, original, currency)
- Description and key features
- Specifications and technical details
- Availability/stock status
- Images (URLs if available)
- Brand and category information
- Customer ratings or reviews summary
Return as structured JSON.""",
    "price": """Extract pricing and availability information:
- Current price and currency
- Original/list price if different
- Discount amount or percentage
- Stock/availability status
- Price comparison data if available
- Shipping costs or delivery info
- Any price alerts or special offers
Return as JSON with clear price fields.""",
    "content": """Extract the main content from this webpage:
- Article/page title
- Author and publication date
- Main text content (clean, formatted)
- Key headings and sections
- Meta information (tags, categories)
- Related links or references
- Summary or excerpt if available
Return as structured JSON with content fields.""",
}

SOURCE_DISCOVERY_PROMPT = """You are an expert e-commerce analyst. Discover and recommend the best websites for tracking {category} products.

Requirements:
- Category: {category}
{product_type_line}- Target Region: {region}
- Include both major retailers and {niche}

List the TOP 15-20 websites where consumers commonly shop for {category} products. For each website give its name, full base URL, a confidence score (0.0-1.0) for how relevant it is to {category}, a short reason it is valuable for price tracking, a rough product count, the general price range and any special features.

Focus on major retailers, category specialists, direct-to-consumer brands, popular regional retailers and discount/outlet stores.{niche_focus}

Format your response as a JSON array with this structure:
[
  {{
    "name": "Website Name",
    "url": "https://example.com",
    "confidence": 0.95,
    "reasoning": "Why this site is great for {category}",
    "category": "{category}",
    "estimatedProductCount": "10000+",
    "priceRange": "all ranges",
    "specialFeatures": ["feature1", "feature2"]
  }}
]

Only include real, legitimate websites that actually exist and sell {category} products.
"""

PRODUCT_DISCOVERY_PROMPT = """You are a shopping research assistant.

Find where the product "{name}" (category: {category}) is sold online and at what price.

Return ONLY a JSON array (no markdown) of objects with this exact shape:
[
  {{
    "url": "https://...",
    "name": "Retailer name",
    "price": 0.0,
    "currency": "USD",
    "availability": "in-stock|out-of-stock|limited|unknown",
    "shipping": "Free shipping",
    "rating": 4.5
  }}
]
"""
