from datetime import date

from scrapedeck.services.templates import (
    JOB_TEMPLATES,
    TEMPLATE_CATEGORIES,
    create_job_from_template,
    get_template_by_id,
    get_templates_by_category,
)


def test_catalogue():
    assert len(JOB_TEMPLATES) == 11
    assert [c.id for c in TEMPLATE_CATEGORIES] == ["e-commerce", "news", "business", "tech", "social", "general"]
    ids = [t.id for t in JOB_TEMPLATES]
    assert len(set(ids)) == len(ids)
    categories = {c.id for c in TEMPLATE_CATEGORIES}
    assert all(t.category in categories for t in JOB_TEMPLATES)


def test_lookup():
    assert get_template_by_id("amazon-product").scraping_type == "product"
    assert get_template_by_id("nope") is None
    assert [t.id for t in get_templates_by_category("tech")] == ["github-repo", "api-documentation"]
    assert get_templates_by_category("unknown") == []


def test_job_from_template_defaults():
    template = get_template_by_id("news-article")
    fields = create_job_from_template(template, today=date(2024, 5, 1))

    assert fields["name"] == f"{template.name} - 2024-05-01"
    assert fields["url"] == template.example_url
    assert fields["ai_prompt"] == template.ai_prompt
    assert fields["status"] == "pending"
    assert fields["schedule_enabled"] is False
    assert fields["config"]["template_id"] == "news-article"
    # provider default model
    assert fields["ai_model"] is None


def test_job_from_template_customization():
    template = get_template_by_id("amazon-product")
    fields = create_job_from_template(
        template,
        {"name": "Headphones", "url": "https://www.amazon.com/dp/X1", "use_vision": False, "ai_model": "gpt-4o"},
    )
    assert fields["name"] == "Headphones"
    assert fields["url"] == "https://www.amazon.com/dp/X1"
    assert template.use_vision is True
    assert fields["use_vision"] is False
    assert fields["ai_model"] == "gpt-4o"


def test_template_dict_is_a_copy():
    template = get_template_by_id("shopify-store")
    d = template.to_dict()
    d["config"]["extra"] = 1
    assert "extra" not in template.config
