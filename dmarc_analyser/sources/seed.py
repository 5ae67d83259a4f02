"""
Global known-sender catalogue.

``seed_known_senders`` inserts any catalogue entry whose name is not yet
present as a global sender; existing rows are left untouched.
"""

from __future__ import annotations

import json
import logging

from dmarc_analyser import db
from dmarc_analyser.models import KnownSender

logger = logging.getLogger(__name__)

KNOWN_SENDERS: list[dict] = [
    {
        "name": "Google Workspace",
        "description": "Google Workspace (formerly G Suite) and Gmail email services",
        "category": "corporate",
        "website": "https://workspace.google.com",
        "ip_ranges": [
            "35.190.247.0/24",
            "64.233.160.0/19",
            "66.102.0.0/20",
            "66.249.80.0/20",
            "72.14.192.0/18",
            "74.125.0.0/16",
            "108.177.8.0/21",
            "172.217.0.0/19",
            "172.217.32.0/20",
            "172.217.128.0/19",
            "172.217.160.0/20",
            "172.217.192.0/19",
            "173.194.0.0/16",
            "209.85.128.0/17",
            "216.58.192.0/19",
            "216.239.32.0/19",
        ],
        "dkim_domains": ["google.com", "gmail.com", "googlemail.com"],
    },
    {
        "name": "Microsoft 365",
        "description": "Microsoft 365 (formerly Office 365), Outlook, and Hotmail email services",
        "category": "corporate",
        "website": "https://www.microsoft.com/microsoft-365",
        "ip_ranges": [
            "13.107.6.152/31",
            "13.107.9.152/31",
            "13.107.18.10/31",
            "13.107.19.10/31",
            "40.92.0.0/15",
            "40.107.0.0/16",
            "52.100.0.0/14",
            "104.47.0.0/17",
            "157.55.234.0/24",
            "207.46.100.0/24",
            "207.46.163.0/24",
        ],
        "dkim_domains": ["protection.outlook.com", "outlook.com", "hotmail.com", "microsoft.com"],
    },
    {
        "name": "Amazon SES",
        "description": "Amazon Simple Email Service - cloud-based email sending service",
        "category": "transactional",
        "website": "https://aws.amazon.com/ses/",
        "ip_ranges": ["54.240.0.0/18", "69.169.224.0/20", "174.129.0.0/16"],
        "dkim_domains": ["amazonses.com", "amazonaws.com"],
    },
    {
        "name": "SendGrid",
        "description": "Twilio SendGrid email delivery platform for transactional and marketing emails",
        "category": "transactional",
        "website": "https://sendgrid.com",
        "ip_ranges": [
            "167.89.0.0/17",
            "168.245.0.0/16",
            "208.117.48.0/20",
            "192.254.112.0/20",
            "198.37.144.0/20",
            "198.21.0.0/21",
        ],
        "dkim_domains": ["sendgrid.net", "sendgrid.me"],
    },
    {
        "name": "Mailchimp",
        "description": "Mailchimp email marketing and automation platform",
        "category": "marketing",
        "website": "https://mailchimp.com",
        "ip_ranges": ["198.2.128.0/18", "198.2.180.0/24", "198.2.186.0/23", "205.201.128.0/20"],
        "dkim_domains": ["mcsv.net", "mailchimp.com", "mandrillapp.com", "rsgsv.net"],
    },
    {
        "name": "Mailgun",
        "description": "Mailgun email API service by Sinch for developers",
        "category": "transactional",
        "website": "https://www.mailgun.com",
        "ip_ranges": ["69.72.32.0/19", "161.38.192.0/20", "198.61.254.0/24"],
        "dkim_domains": ["mailgun.org", "mailgun.com", "mailgun.info"],
    },
    {
        "name": "Postmark",
        "description": "Postmark transactional email service with high deliverability",
        "category": "transactional",
        "website": "https://postmarkapp.com",
        "ip_ranges": ["50.31.152.0/24", "146.20.0.0/16"],
        "dkim_domains": ["pm-bounces.com", "postmarkapp.com"],
    },
    {
        "name": "SparkPost",
        "description": "SparkPost email delivery service for high-volume senders",
        "category": "transactional",
        "website": "https://www.sparkpost.com",
        "ip_ranges": ["167.89.0.0/17"],
        "dkim_domains": ["sparkpostmail.com", "sparkpost.com"],
    },
    {
        "name": "Sendinblue/Brevo",
        "description": "Brevo (formerly Sendinblue) marketing automation and email platform",
        "category": "marketing",
        "website": "https://www.brevo.com",
        "ip_ranges": ["145.239.0.0/16", "185.107.232.0/24"],
        "dkim_domains": ["sendinblue.com", "brevo.com"],
    },
    {
        "name": "Constant Contact",
        "description": "Constant Contact email marketing and online survey platform",
        "category": "marketing",
        "website": "https://www.constantcontact.com",
        "ip_ranges": ["65.124.128.0/19", "208.75.120.0/21"],
        "dkim_domains": ["constantcontact.com", "ctctcdn.com"],
    },
    {
        "name": "HubSpot",
        "description": "HubSpot marketing, sales, and CRM platform",
        "category": "marketing",
        "website": "https://www.hubspot.com",
        "ip_ranges": ["23.21.109.0/24", "23.21.109.197/32"],
        "dkim_domains": ["hubspot.com", "hs-email.net"],
    },
    {
        "name": "Salesforce Marketing Cloud",
        "description": "Salesforce Marketing Cloud (formerly ExactTarget) for enterprise marketing",
        "category": "marketing",
        "website": "https://www.salesforce.com/products/marketing-cloud/",
        "ip_ranges": ["136.147.0.0/16"],
        "dkim_domains": ["exacttarget.com", "salesforce.com"],
    },
    {
        "name": "Zendesk",
        "description": "Zendesk customer service and support platform emails",
        "category": "transactional",
        "website": "https://www.zendesk.com",
        "ip_ranges": ["192.161.144.0/20"],
        "dkim_domains": ["zendesk.com"],
    },
    {
        "name": "Freshdesk",
        "description": "Freshdesk customer support and helpdesk platform",
        "category": "transactional",
        "website": "https://www.freshdesk.com",
        "ip_ranges": ["136.143.0.0/16"],
        "dkim_domains": ["freshdesk.com"],
    },
    {
        "name": "Intercom",
        "description": "Intercom customer messaging and engagement platform",
        "category": "transactional",
        "website": "https://www.intercom.com",
        "ip_ranges": ["52.0.0.0/8"],
        "dkim_domains": ["intercom.io", "intercom-mail.com"],
    },
    {
        "name": "Campaign Monitor",
        "description": "Campaign Monitor email marketing and automation platform",
        "category": "marketing",
        "website": "https://www.campaignmonitor.com",
        "ip_ranges": ["103.28.250.0/24", "103.99.72.0/22"],
        "dkim_domains": ["createsend.com", "campaignmonitor.com"],
    },
    {
        "name": "Yahoo Mail",
        "description": "Yahoo Mail email service",
        "category": "corporate",
        "website": "https://mail.yahoo.com",
        "ip_ranges": [
            "66.94.224.0/19",
            "67.195.0.0/16",
            "74.6.0.0/16",
            "98.136.0.0/14",
            "202.160.176.0/20",
        ],
        "dkim_domains": ["yahoo.com", "yahoodns.net"],
    },
    {
        "name": "Zoho Mail",
        "description": "Zoho Mail email hosting service for businesses",
        "category": "corporate",
        "website": "https://www.zoho.com/mail/",
        "ip_ranges": ["136.143.190.0/23", "136.143.186.0/23"],
        "dkim_domains": ["zoho.com", "zohomail.com"],
    },
]


def seed_known_senders() -> int:
    """Insert missing global known senders.

    Returns:
        Number of senders inserted.
    """
    existing = set(
        db.session.execute(
            db.select(KnownSender.name).where(KnownSender.is_global.is_(True))
        ).scalars()
    )
    inserted = 0
    for entry in KNOWN_SENDERS:
        if entry["name"] in existing:
            continue
        db.session.add(
            KnownSender(
                name=entry["name"],
                description=entry["description"],
                category=entry["category"],
                website=entry["website"],
                ip_ranges=json.dumps(entry["ip_ranges"]),
                dkim_domains=json.dumps(entry["dkim_domains"]),
                is_global=True,
            )
        )
        inserted += 1
    db.session.commit()
    logger.info("Known senders seeded: inserted=%d skipped=%d", inserted, len(KNOWN_SENDERS) - inserted)
    return inserted
