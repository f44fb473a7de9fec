from __future__ import annotations

from ngevent import database
from ngevent.models import EmailTemplate
from ngevent.storage import DEFAULT_EMAIL_TEMPLATES, ensure_email_templates


def test_ensure_email_templates_is_idempotent():
    created = ensure_email_templates()
    assert sorted(created) == sorted(DEFAULT_EMAIL_TEMPLATES)
    assert ensure_email_templates() == []

    session = database.SessionLocal()
    templates = session.query(EmailTemplate).all()
    assert {t.template_type for t in templates} == {"welcome", "registration_confirmation"}
    assert all(t.active for t in templates)
    session.close()


def test_ensure_email_templates_keeps_customized_rows():
    with database.get_session() as session:
        session.add(
            EmailTemplate(
                template_type="welcome",
                subject="Custom hello {{user_name}}",
                html_body="<p>Custom</p>",
                active=True,
            )
        )

    assert ensure_email_templates() == ["registration_confirmation"]

    session = database.SessionLocal()
    welcome = session.query(EmailTemplate).filter_by(template_type="welcome").one()
    assert welcome.subject == "Custom hello {{user_name}}"
    session.close()
