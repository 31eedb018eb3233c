"""Predefined email templates used by the predefined pipelines."""
from mailpipe.logging_config import get_logger
from mailpipe.models import EmailTemplate, TemplateStatus, TemplateType, db

logger = get_logger(__name__)


WELCOME_NEW_MEMBER = dict(
    template_code="WELCOME_NEW_MEMBER",
    name="Welcome New Member",
    category="welcome",
    subject_template="Welcome to our community, {{ customerName }}!",
    html_template="""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; background-color: #ffffff;">
  <div style="background-color: #4CAF50; color: white; padding: 40px; text-align: center;">
    <h1 style="margin: 0; font-size: 32px;">Welcome!</h1>
    <p style="margin: 10px 0 0 0; font-size: 18px;">We're thrilled to have you join us</p>
  </div>
  <div style="padding: 40px 30px;">
    <h2 style="color: #2c3e50; margin-top: 0;">Hello {{ customerName }}!</h2>
    <p style="font-size: 16px; line-height: 1.6; color: #555;">
      Welcome to our reading community! We're excited to have you on board since {{ joinDate }}.
    </p>
    <ul style="line-height: 1.8; color: #555;">
      <li>Personalized book recommendations</li>
      <li>Exclusive access to new releases</li>
      <li>Daily reading motivation and tips</li>
    </ul>
    <p style="font-size: 14px; color: #888;">
      This welcome was sent to {{ customerEmail }}. Just reply if you need help getting started.
    </p>
  </div>
</div>
""",
    text_template="""Hello {{ customerName }}!

Welcome to our reading community! We're excited to have you on board since {{ joinDate }}.

Here's what you can expect:
- Personalized book recommendations
- Exclusive access to new releases
- Daily reading motivation and tips

This welcome was sent to {{ customerEmail }}. Just reply if you need help getting started.

Welcome aboard!
The Reading Community Team""",
    required_variables=["customerName", "customerEmail", "joinDate"],
)

NEW_BOOK_RELEASE = dict(
    template_code="NEW_BOOK_RELEASE",
    name="New Book Release Announcement",
    category="book_release",
    subject_template="New Book: {{ bookTitle }} by {{ bookAuthor }}",
    html_template="""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; background-color: #ffffff;">
  <div style="background-color: #667eea; color: white; padding: 30px; text-align: center;">
    <h1 style="margin: 0; font-size: 28px;">New Book Release!</h1>
  </div>
  <div style="padding: 30px;">
    <h2 style="color: #2c3e50; margin-top: 0;">Hello {{ customerName }}!</h2>
    <p style="font-size: 16px; line-height: 1.6;">We're excited to announce a new book that matches your reading interests:</p>
    <div style="background-color: #f8f9fa; border-left: 4px solid #667eea; padding: 20px; margin: 25px 0;">
      <h3 style="margin: 0 0 10px 0; color: #2c3e50;">{{ bookTitle }}</h3>
      <p style="margin: 0; color: #6c757d;"><strong>By:</strong> {{ bookAuthor }}</p>
      <p style="margin: 5px 0 0 0; color: #6c757d;"><strong>Genre:</strong> {{ bookGenre }}</p>
      {% if bookTopics %}<p style="margin: 5px 0 0 0; color: #6c757d;"><strong>Topics:</strong> {{ bookTopics }}</p>{% endif %}
    </div>
    <p style="font-size: 14px; color: #6c757d; text-align: center;">Available from {{ releaseDate }}. Sent to {{ customerEmail }}.</p>
  </div>
</div>
""",
    text_template="""New Book Release: {{ bookTitle }}

Hello {{ customerName }}!

We're excited to announce a new book that matches your reading interests:

{{ bookTitle }}
By: {{ bookAuthor }}
Genre: {{ bookGenre }}
{% if bookTopics %}Topics: {{ bookTopics }}{% endif %}

Available from {{ releaseDate }}.

Happy reading!
The Library Team""",
    required_variables=["customerName", "customerEmail", "bookTitle", "bookAuthor", "bookGenre"],
)

PREDEFINED_TEMPLATES = [WELCOME_NEW_MEMBER, NEW_BOOK_RELEASE]


def seed_predefined_templates():
    """
    Insert the predefined templates that do not exist yet.

    Existing templates are left untouched so operator edits survive restarts.

    Returns:
        list[str]: Codes of the templates created
    """
    created = []
    for data in PREDEFINED_TEMPLATES:
        if EmailTemplate.query.filter_by(template_code=data["template_code"]).first():
            continue
        template = EmailTemplate(
            template_type=TemplateType.PREDEFINED,
            status=TemplateStatus.APPROVED,
            **data,
        )
        errors = template.validate()
        if errors:
            logger.error("Predefined template is invalid, not seeding",
                         template_code=data["template_code"], errors=errors)
            continue
        db.session.add(template)
        created.append(data["template_code"])

    if created:
        db.session.commit()
        logger.info("Predefined templates seeded", templates=created)
    return created
