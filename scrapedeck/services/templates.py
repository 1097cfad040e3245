from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any


@dataclass(frozen=True)
class JobTemplate:
    id: str
    name: str
    description: str
    category: str  # e-commerce|news|social|business|tech|general
    icon: str
    example_url: str
    scraping_type: str
    ai_prompt: str
    use_vision: bool = False
    ai_model: str | None = None  # None -> provider default
    selectors: dict[str, str] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "icon": self.icon,
            "example_url": self.example_url,
            "scraping_type": self.scraping_type,
            "ai_prompt": self.ai_prompt,
            "use_vision": self.use_vision,
            "ai_model": self.ai_model,
            "selectors": dict(self.selectors),
            "config": dict(self.config),
        }


@dataclass(frozen=True)
class TemplateCategory:
    id: str
    name: str
    description: str
    icon: str


JOB_TEMPLATES: list[JobTemplate] = [
    # ---- e-commerce ----
    JobTemplate(
        id="amazon-product",
        name="Amazon Product",
        description="Extract product details from Amazon product pages",
        category="e-commerce",
        icon="🛒",
        example_url="https://www.amazon.com/dp/B08N5WRWNW",
        scraping_type="product",
        ai_prompt="""Extract detailed product information from this Amazon product page including:
- Product title and brand
- Price (current, original, discount percentage)
- Product description and key features
- Technical specifications
- Customer rating and review count
- Availability status
- Product images (URLs)
- Shipping information
- Product category and subcategory

Return the data in a structured JSON format with clear field names.""",
        use_vision=True,
        config={"template": "amazon-product", "retry_count": 3},
    ),
    JobTemplate(
        id="shopify-store",
        name="Shopify Store Product",
        description="Extract product information from Shopify stores",
        category="e-commerce",
        icon="🏪",
        example_url="https://example.myshopify.com/products/product-name",
        scraping_type="product",
        ai_prompt="""Extract product information from this Shopify product page:
- Product name and description
- Price and variants (size, color, etc.)
- Product images
- Stock availability
- Product reviews and ratings
- Shipping and return policy
- Related/recommended products

Format as structured JSON with clear categorization.""",
        use_vision=True,
        config={"template": "shopify-store"},
    ),
    JobTemplate(
        id="price-comparison",
        name="Price Monitor",
        description="Monitor price changes across different retailers",
        category="e-commerce",
        icon="💰",
        example_url="https://example.com/product/123",
        scraping_type="price",
        ai_prompt="""Extract pricing information from this product page:
- Current price
- Original/MSRP price
- Discount amount and percentage
- Currency
- Stock status
- Price change indicators
- Special offers or promotions
- Price comparison with competitors if shown

Return data focusing on price-related information in JSON format.""",
        config={"template": "price-monitor", "schedule_enabled": True},
    ),
    # ---- news & content ----
    JobTemplate(
        id="news-article",
        name="News Article",
        description="Extract structured data from news articles",
        category="news",
        icon="📰",
        example_url="https://example-news.com/article/title",
        scraping_type="content",
        ai_prompt="""Extract article information from this news page:
- Article headline and subheadline
- Author name and publication date
- Article body text (full content)
- Article summary/excerpt
- Tags and categories
- Related articles
- Comments count
- Social media share counts
- Image URLs and captions

Structure the content in clean JSON format suitable for content management.""",
        config={"template": "news-article"},
    ),
    JobTemplate(
        id="blog-post",
        name="Blog Post",
        description="Extract blog post content and metadata",
        category="news",
        icon="📝",
        example_url="https://example-blog.com/2024/post-title",
        scraping_type="content",
        ai_prompt="""Extract blog post information:
- Post title and subtitle
- Author information (name, bio, social links)
- Publication and last updated dates
- Full post content with formatting preserved
- Tags and categories
- Comments and engagement metrics
- Related posts
- SEO metadata (meta description, keywords)

Return structured data maintaining content hierarchy.""",
        config={"template": "blog-post"},
    ),
    # ---- business ----
    JobTemplate(
        id="company-directory",
        name="Company Directory",
        description="Extract business information from directory listings",
        category="business",
        icon="🏢",
        example_url="https://business-directory.com/company/example-inc",
        scraping_type="general",
        ai_prompt="""Extract company information from this business directory page:
- Company name and legal name
- Business address and contact information
- Phone numbers and email addresses
- Website and social media links
- Business description and services
- Industry and business category
- Number of employees
- Founded date
- Reviews and ratings
- Key personnel and leadership

Format as comprehensive business profile in JSON.""",
        config={"template": "company-directory"},
    ),
    JobTemplate(
        id="job-listing",
        name="Job Listing",
        description="Extract job posting details from career sites",
        category="business",
        icon="💼",
        example_url="https://careers.example.com/jobs/123",
        scraping_type="general",
        ai_prompt="""Extract job listing information:
- Job title and level (junior, senior, etc.)
- Company name and description
- Job location (remote, hybrid, on-site)
- Salary range and benefits
- Job requirements and qualifications
- Responsibilities and duties
- Application deadline
- Employment type (full-time, part-time, contract)
- Required skills and technologies
- Application process and contact information

Structure as detailed job posting data in JSON.""",
        config={"template": "job-listing"},
    ),
    # ---- tech ----
    JobTemplate(
        id="github-repo",
        name="GitHub Repository",
        description="Extract repository information from GitHub",
        category="tech",
        icon="💻",
        example_url="https://github.com/username/repository",
        scraping_type="general",
        ai_prompt="""Extract GitHub repository information:
- Repository name and description
- Owner/organization information
- Programming languages used
- Stars, forks, and watchers count
- License information
- README content summary
- Latest releases and tags
- Contributor information
- Issues and pull requests stats
- Last updated date

Return comprehensive repository metadata in JSON format.""",
        config={"template": "github-repo"},
    ),
    JobTemplate(
        id="api-documentation",
        name="API Documentation",
        description="Extract API endpoints and documentation",
        category="tech",
        icon="🔌",
        example_url="https://api-docs.example.com/v1/reference",
        scraping_type="content",
        ai_prompt="""Extract API documentation information:
- API name and version
- Available endpoints and methods
- Request/response parameters
- Authentication requirements
- Rate limiting information
- Code examples in different languages
- Error codes and responses
- SDKs and client libraries
- Getting started guide

Structure as comprehensive API reference in JSON.""",
        config={"template": "api-docs"},
    ),
    # ---- social ----
    JobTemplate(
        id="social-profile",
        name="Social Media Profile",
        description="Extract public profile information from social platforms",
        category="social",
        icon="👤",
        example_url="https://social-platform.com/username",
        scraping_type="general",
        ai_prompt="""Extract public social media profile information:
- Profile name and username
- Bio/description
- Follower and following counts
- Profile picture and banner URLs
- Location and website links
- Verification status
- Public post counts
- Join date
- Contact information (if public)

Only extract publicly visible information. Structure as profile summary in JSON.""",
        use_vision=True,
        config={"template": "social-profile", "respectful_scraping": True},
    ),
    # ---- general ----
    JobTemplate(
        id="contact-page",
        name="Contact Information",
        description="Extract contact details from business websites",
        category="general",
        icon="📞",
        example_url="https://example.com/contact",
        scraping_type="general",
        ai_prompt="""Extract contact information from this page:
- Business name and address
- Phone numbers (main, support, sales)
- Email addresses by department
- Office hours and time zones
- Physical location and directions
- Contact forms and submission methods
- Social media links
- Support channels (chat, tickets, etc.)
- Emergency contact information

Format as comprehensive contact directory in JSON.""",
        config={"template": "contact-info"},
    ),
]

TEMPLATE_CATEGORIES: list[TemplateCategory] = [
    TemplateCategory("e-commerce", "E-commerce", "Product pages, pricing, online stores", "🛒"),
    TemplateCategory("news", "News & Content", "Articles, blogs, content sites", "📰"),
    TemplateCategory("business", "Business", "Company info, directories, job listings", "🏢"),
    TemplateCategory("tech", "Technology", "GitHub, APIs, documentation", "💻"),
    TemplateCategory("social", "Social Media", "Profiles, public content", "👥"),
    TemplateCategory("general", "General", "Contact info, miscellaneous", "🔍"),
]


def get_template_by_id(template_id: str) -> JobTemplate | None:
    for t in JOB_TEMPLATES:
        if t.id == template_id:
            return t
    return None


def get_templates_by_category(category: str) -> list[JobTemplate]:
    return [t for t in JOB_TEMPLATES if t.category == category]


def create_job_from_template(
    template: JobTemplate,
    customization: dict[str, Any] | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    """
    Job fields for a new job based on `template`.

    Customization may override name, url, ai_prompt, use_vision and ai_model.
    """
    c = customization or {}
    today = today or date.today()
    return {
        "name": c.get("name") or f"{template.name} - {today.isoformat()}",
        "url": c.get("url") or template.example_url,
        "scraping_type": template.scraping_type,
        "ai_prompt": c.get("ai_prompt") or template.ai_prompt,
        "use_vision": template.use_vision if c.get("use_vision") is None else bool(c["use_vision"]),
        "ai_model": c.get("ai_model") or template.ai_model,
        "status": "pending",
        "config": {**template.config, "template_id": template.id},
        "selectors": dict(template.selectors),
        "schedule_enabled": False,
    }
