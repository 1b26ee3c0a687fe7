from __future__ import annotations

from unittest.mock import MagicMock, patch

from portal.mailer import InMemoryMailer, SmtpMailer, create_mailer_from_env


def test_without_smtp_host_messages_stay_in_memory():
    mailer = create_mailer_from_env({})
    assert isinstance(mailer, InMemoryMailer)
    mailer.send(to="a@b.test", subject="s", text="t")
    assert mailer.outbox == [{"to": "a@b.test", "subject": "s", "text": "t", "html": None}]


def test_smtp_mailer_uses_starttls_and_login():
    mailer = create_mailer_from_env(
        {
            "SMTP_HOST": "smtp.test",
            "SMTP_PORT": "2525",
            "SMTP_USER": "bot@agency.test",
            "SMTP_PASSWORD": "pw",
        }
    )
    assert isinstance(mailer, SmtpMailer)

    with patch("portal.mailer.smtplib.SMTP") as smtp_cls:
        server = MagicMock()
        smtp_cls.return_value.__enter__.return_value = server
        mailer.send(to="client@example.com", subject="Sign in", text="hi", html="<p>hi</p>")

    smtp_cls.assert_called_once_with(host="smtp.test", port=2525, timeout=30)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("bot@agency.test", "pw")
    sent = server.send_message.call_args.args[0]
    assert sent["From"] == "bot@agency.test"
    assert sent["To"] == "client@example.com"
    assert sent.get_body(preferencelist=("html",)).get_content().strip() == "<p>hi</p>"
