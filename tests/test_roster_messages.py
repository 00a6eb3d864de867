from datetime import datetime

import pytest

import services
from db import db
from models import Message


def test_available_profiles_exclude_farmers_already_on_a_roster(agent, farmer_profile):
    spare = services.register_profile('spare@test.com', 'pw123456', 'Sam Spare', 'farmer')

    before = [p['id'] for p in services.available_farmer_profiles()]
    services.add_farmer(agent, profile_id=farmer_profile.id)
    after = [p['id'] for p in services.available_farmer_profiles()]

    assert before == [farmer_profile.id, spare.id]
    assert after == [spare.id]


def test_add_farmer_from_profile_copies_details(agent, farmer_profile):
    farmer = services.add_farmer(agent, profile_id=farmer_profile.id)

    assert farmer.profile_id == farmer_profile.id
    assert farmer.full_name == 'Faith Farmer'
    assert farmer.phone_number == '+254700000002'
    assert farmer.location == 'Molo'
    assert farmer.created_by == agent.id


def test_farmer_profile_can_only_join_one_roster(agent, other_agent, roster_farmer, farmer_profile):
    with pytest.raises(services.ValidationError):
        services.add_farmer(other_agent, profile_id=farmer_profile.id)


def test_agent_profile_cannot_be_added_as_farmer(agent, other_agent):
    with pytest.raises(services.NotFoundError):
        services.add_farmer(agent, profile_id=other_agent.id)


def test_add_farmer_without_account(agent):
    farmer = services.add_farmer(agent, full_name=' Joseph ', phone_number='0711', location='Njoro')

    assert farmer.profile_id is None
    assert farmer.full_name == 'Joseph'


def test_new_farmer_needs_name_phone_and_location(agent):
    with pytest.raises(services.ValidationError):
        services.add_farmer(agent, full_name='Joseph', phone_number='', location='Njoro')


def test_roster_is_per_agent_and_sorted(agent, other_agent, roster_farmer):
    services.add_farmer(agent, full_name='Ben', phone_number='1', location='X')
    services.add_farmer(other_agent, full_name='Zed', phone_number='2', location='Y')

    names = [f['full_name'] for f in services.list_farmers(agent)]

    assert names == ['Ben', 'Faith Farmer']


def test_unread_counts_on_roster(agent, roster_farmer, farmer_profile):
    services.send_message(farmer_profile, agent.id, 'Is pickup still at 9?')
    services.send_message(farmer_profile, agent.id, 'Hello?')
    services.add_farmer(agent, full_name='Ben', phone_number='1', location='X')

    counts = {f['full_name']: f['unread_count'] for f in services.list_farmers(agent)}

    assert counts == {'Ben': 0, 'Faith Farmer': 2}


def test_message_types_follow_sender_role(agent, roster_farmer, farmer_profile):
    question = services.send_message(farmer_profile, agent.id, '  Need cans  ')
    answer = services.send_message(agent, farmer_profile.id, 'Bringing two')

    assert question.message_type == 'inquiry'
    assert question.content == 'Need cans'
    assert answer.message_type == 'response'


def test_empty_message_is_rejected(agent, roster_farmer, farmer_profile):
    with pytest.raises(services.ValidationError):
        services.send_message(farmer_profile, agent.id, '   ')


def test_farmer_can_only_message_own_agent(other_agent, roster_farmer, farmer_profile):
    with pytest.raises(services.ValidationError):
        services.send_message(farmer_profile, other_agent.id, 'hi')


def test_agent_can_only_message_roster_farmers(other_agent, roster_farmer, farmer_profile):
    with pytest.raises(services.ValidationError):
        services.send_message(other_agent, farmer_profile.id, 'hi')


def test_unknown_recipient(agent):
    with pytest.raises(services.NotFoundError):
        services.send_message(agent, 999, 'hi')


def test_farmer_without_agent_cannot_message(agent):
    loner = services.register_profile('loner@test.com', 'pw123456', 'Lone Farmer', 'farmer')
    with pytest.raises(services.ValidationError):
        services.send_message(loner, agent.id, 'hi')


def test_mark_read_sets_read_at_once(agent, roster_farmer, farmer_profile):
    message = services.send_message(farmer_profile, agent.id, 'hello')
    first = datetime(2030, 1, 1, 9, 0)

    services.mark_message_read(agent, message.id, now=first)
    services.mark_message_read(agent, message.id, now=datetime(2030, 1, 2, 9, 0))

    assert db.session.get(Message, message.id).read_at == first


def test_only_receiver_can_mark_read(agent, roster_farmer, farmer_profile):
    message = services.send_message(farmer_profile, agent.id, 'hello')
    with pytest.raises(services.NotFoundError):
        services.mark_message_read(farmer_profile, message.id)


def test_conversation_and_mark_conversation_read(agent, roster_farmer, farmer_profile):
    services.send_message(farmer_profile, agent.id, 'one')
    services.send_message(agent, farmer_profile.id, 'two')
    services.send_message(farmer_profile, agent.id, 'three')

    assert [m['content'] for m in services.conversation(agent, farmer_profile.id)] == ['one', 'two', 'three']
    assert services.mark_conversation_read(agent, farmer_profile.id) == 2
    assert services.mark_conversation_read(agent, farmer_profile.id) == 0
    assert services.list_farmers(agent)[0]['unread_count'] == 0


def test_mark_conversation_read_checks_correspondent_first(agent, other_agent, roster_farmer, farmer_profile):
    # Row written directly: the farmer is not on other_agent's roster
    stray = Message(sender_id=farmer_profile.id, receiver_id=other_agent.id, content='wrong agent')
    db.session.add(stray)
    db.session.commit()

    with pytest.raises(services.ValidationError):
        services.mark_conversation_read(other_agent, farmer_profile.id)

    assert db.session.get(Message, stray.id).read_at is None
