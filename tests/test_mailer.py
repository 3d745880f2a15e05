import smtplib

import pytest

from consultorio import config
from consultorio.mailer import TEMPLATES, SmtpMailer, render

VARS = {
    "patientName": "María López",
    "patientEmail": "maria@test.local",
    "doctorName": "Dra. Ana García",
    "doctorSpecialty": "Medicina General",
    "appointmentDate": "2025-03-11",
    "appointmentTime": "09:00",
    "appointmentTitle": "Control <anual>",
}


@pytest.mark.parametrize("name", sorted(TEMPLATES))
def test_templates_render(name):
    email = render(name, VARS)

    assert email.to == "maria@test.local"
    assert "2025-03-11" in email.subject
    assert "María López" in email.html
    assert "Control &lt;anual&gt;" in email.html


def test_render_rejects_unknown_template():
    with pytest.raises(ValueError):
        render("welcome", VARS)


def test_render_requires_recipient():
    with pytest.raises(ValueError):
        render("appointment_confirmation", {**VARS, "patientEmail": ""})


def test_demo_mode_without_credentials():
    mailer = SmtpMailer(user="", password="")

    res = mailer.send("appointment_confirmation", VARS)

    assert mailer.demo_mode
    assert res.success
    assert res.message_id.startswith("demo-")
    assert res.to_dict() == {"success": True, "messageId": res.message_id}


def test_bad_variables_are_a_failed_result():
    res = SmtpMailer(user="", password="").send("appointment_cancelled", {"patientName": "X"})

    assert not res.success
    assert res.to_dict()["success"] is False


def test_smtp_errors_become_failed_result(monkeypatch):
    class DeadSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, "service not available")

    monkeypatch.setattr(smtplib, "SMTP", DeadSMTP)

    res = SmtpMailer(host="smtp.test", user="u", password="p").send("appointment_reminder", VARS)

    assert not res.success
    assert "service not available" in res.error


def test_clinic_footer_comes_from_config(monkeypatch):
    monkeypatch.setattr(config, "CLINIC_ADDRESS", "Calle 10 #5-20, Bogotá")
    monkeypatch.setattr(config, "CLINIC_PHONE", "601 555 0101")

    html = render("appointment_reminder", VARS).html

    assert "Calle 10 #5-20, Bogotá" in html
    assert "601 555 0101" in html


def test_variables_override_clinic_footer(monkeypatch):
    monkeypatch.setattr(config, "CLINIC_ADDRESS", "Calle 10")

    html = render("appointment_reminder", {**VARS, "clinicAddress": "Sede Norte"}).html

    assert "Sede Norte" in html
    assert "Calle 10" not in html
