"""Tests for the contacts repair pass."""

import pytest

from helpers import INSTANCE, FakeResponse
from inboxsync.domain.contacts_repair import ContactRepairOptions, ContactsRepair
from inboxsync.domain.identity import IdentityResolver
from inboxsync.domain.run import RunContext

PHONE = "5511999999999"
PHONE_JID = f"{PHONE}@s.whatsapp.net"
LID = "184563287465823@lid"
FIND_CHATS = f"/chat/findChats/{INSTANCE}"
FIND_CONTACTS = f"/chat/findContacts/{INSTANCE}"


@pytest.fixture
def repair(store, gateway, settings):
    return ContactsRepair(store, IdentityResolver(store, gateway, settings), settings)


def _new_ctx(ctx, dry_run=False):
    return RunContext(company_id=ctx.company_id, instance_name=ctx.instance_name, dry_run=dry_run)


class TestFixNames:
    def test_numeric_name_replaced_by_push_name(self, store, session, repair, ctx):
        contact = store.add_contact(name=PHONE, phone=PHONE, remote_jid=PHONE_JID)
        session.route("POST", FIND_CHATS, [])
        session.route("POST", FIND_CONTACTS, [{"remoteJid": PHONE_JID, "pushName": "Maria Souza"}])

        report = repair.run(ctx, ContactRepairOptions())

        assert report.names_fixed == 1
        assert store.contacts[contact.id].name == "Maria Souza"
        assert report.results[0] == {"contactId": contact.id, "step": "names", "status": "renamed"}

        again = repair.run(_new_ctx(ctx), ContactRepairOptions())
        assert again.names_fixed == 0

    def test_lookup_by_phone_when_contact_has_no_jid(self, store, session, repair, ctx):
        contact = store.add_contact(name="Sem nome", phone=PHONE)
        session.route("POST", FIND_CHATS, [{"remoteJid": PHONE_JID, "name": "Maria Souza"}])
        session.route("POST", FIND_CONTACTS, [])

        repair.run(ctx, ContactRepairOptions(resolve_lids=False, merge_duplicates=False))

        assert store.contacts[contact.id].name == "Maria Souza"

    def test_good_names_never_load_directory(self, store, session, repair, ctx):
        store.add_contact(name="Maria Souza", phone=PHONE, remote_jid=PHONE_JID)

        report = repair.run(ctx, ContactRepairOptions())

        assert report.names_fixed == 0
        assert session.calls_to(FIND_CHATS) == []

    def test_dry_run(self, store, session, repair, dry_ctx):
        contact = store.add_contact(name=PHONE, phone=PHONE, remote_jid=PHONE_JID)
        session.route("POST", FIND_CHATS, [])
        session.route("POST", FIND_CONTACTS, [{"remoteJid": PHONE_JID, "pushName": "Maria Souza"}])

        report = repair.run(dry_ctx, ContactRepairOptions())

        assert report.names_fixed == 1
        assert report.results[0]["status"] == "would_rename"
        assert store.contacts[contact.id].name == PHONE


class TestResolveLids:
    def test_lid_contact_gets_phone(self, store, session, repair, ctx):
        contact = store.add_contact(name="Maria Souza", remote_jid=LID)
        session.route("POST", FIND_CHATS, [{"remoteJid": PHONE_JID, "name": "Maria Souza"}])
        session.route("POST", FIND_CONTACTS, [])

        report = repair.run(ctx, ContactRepairOptions())

        assert report.lids_updated == 1
        assert store.contacts[contact.id].phone == PHONE
        assert store.lid_mappings[(ctx.company_id, LID)].phone == PHONE

    def test_phone_already_owned(self, store, session, repair, ctx):
        store.add_contact(name="Maria Souza", phone=PHONE, remote_jid=PHONE_JID)
        lid_contact = store.add_contact(name="Maria Souza", remote_jid=LID)
        session.route("POST", FIND_CHATS, [{"remoteJid": PHONE_JID, "name": "Maria Souza"}])
        session.route("POST", FIND_CONTACTS, [])

        report = repair.run(ctx, ContactRepairOptions())

        assert report.lids_unresolved == 1
        assert report.results == [{"contactId": lid_contact.id, "step": "lids", "status": "phone_exists"}]
        assert store.contacts[lid_contact.id].phone is None

    def test_partial_match_marks_candidate(self, store, session, repair, ctx):
        contact = store.add_contact(name="Maria Souza", remote_jid=LID)
        session.route("POST", FIND_CHATS, [{"remoteJid": PHONE_JID, "name": "Maria Souza Silva"}])
        session.route("POST", FIND_CONTACTS, [])

        report = repair.run(ctx, ContactRepairOptions(fix_names=False, merge_duplicates=False))

        assert report.results == [{"contactId": contact.id, "step": "lids", "status": "needs_review"}]
        assert store.contacts[contact.id].metadata["lidCandidate"] == PHONE
        assert store.contacts[contact.id].phone is None

    def test_gateway_failure_recorded(self, store, session, repair, ctx):
        store.add_contact(name="Maria Souza", remote_jid=LID)
        session.route("POST", FIND_CHATS, FakeResponse(503, {}))

        report = repair.run(ctx, ContactRepairOptions(fix_names=False, merge_duplicates=False))

        assert report.lids_updated == 0
        assert len(report.errors) == 1
        assert "lid resolution failed (GatewayError)" in report.errors[0]


class TestMergeDuplicates:
    def test_merges_local_and_international_format(self, store, repair, ctx):
        legacy = store.add_contact(name="Maria", phone="11988887777")
        modern = store.add_contact(name="Maria Souza", phone="5511988887777", remote_jid="5511988887777@s.whatsapp.net")
        conversation = store.add_conversation(modern, remote_jid="5511988887777@s.whatsapp.net")

        report = repair.run(ctx, ContactRepairOptions())

        assert report.merged == 1
        assert modern.id not in store.contacts
        assert store.conversations[conversation.id].contact_id == legacy.id
        merged = store.contacts[legacy.id]
        assert merged.phone == "5511988887777"
        assert merged.remote_jid == "5511988887777@s.whatsapp.net"
        assert report.results[-1]["conversationsMoved"] == 1

        assert repair.run(_new_ctx(ctx), ContactRepairOptions()).merged == 0

    def test_dry_run_merge_reports_only(self, store, repair, dry_ctx):
        store.add_contact(name="Maria", phone="11988887777")
        store.add_contact(name="Maria Souza", phone="5511988887777")

        report = repair.run(dry_ctx, ContactRepairOptions())

        assert report.merged == 1
        assert report.results[-1]["status"] == "would_merge"
        assert len(store.contacts) == 2

    def test_steps_can_be_disabled(self, store, repair, ctx):
        store.add_contact(name="Maria", phone="11988887777")
        store.add_contact(name="Maria Souza", phone="5511988887777")

        report = repair.run(ctx, ContactRepairOptions(merge_duplicates=False))

        assert report.merged == 0
        assert len(store.contacts) == 2
