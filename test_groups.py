"""
Tests for group key distribution and shared-key group messages.
"""

import pytest

from seal.groups import EncryptedGroupPayload, GroupKeyManager, GroupKeyRecord
from seal.messages import Err, Ok
from seal.primitives import IV_SIZE, DecryptionError, EncodingError, generate_symmetric_key

groups = GroupKeyManager()


def test_group_key_size():
    first = groups.create_group_key()
    second = groups.create_group_key()

    assert len(first) == 32
    assert first != second


@pytest.mark.asyncio
async def test_every_member_recovers_the_same_key(alice, bob, carol):
    group_key = groups.create_group_key()
    records = await groups.distribute(
        "g1", group_key, {"alice": alice.public_key, "bob": bob.public_key, "carol": carol.public_key}
    )

    assert [r.member_id for r in records] == ["alice", "bob", "carol"]
    assert all(r.group_id == "g1" for r in records)
    assert len({r.encrypted_group_key for r in records}) == 3

    owners = {"alice": alice, "bob": bob, "carol": carol}
    for record in records:
        unwrapped = await groups.unwrap_group_key(record.encrypted_group_key, owners[record.member_id].private_key)
        assert unwrapped == group_key


@pytest.mark.asyncio
async def test_members_read_each_others_messages(alice, bob, carol):
    group_key = groups.create_group_key()
    records = await groups.distribute("g2", group_key, {"alice": alice.public_key, "bob": bob.public_key})
    by_member = {r.member_id: r for r in records}

    payload = await groups.encrypt_group_message("hi group", group_key)
    bob_key = await groups.unwrap_group_key(by_member["bob"].encrypted_group_key, bob.private_key)

    assert await groups.decrypt_group_message(payload, bob_key) == "hi group"
    with pytest.raises(DecryptionError):
        await groups.unwrap_group_key(by_member["bob"].encrypted_group_key, carol.private_key)


@pytest.mark.asyncio
async def test_added_member_gets_the_existing_key(alice, carol):
    group_key = groups.create_group_key()
    await groups.distribute("g3", group_key, {"alice": alice.public_key})
    old_message = await groups.encrypt_group_message("before carol joined", group_key)

    wrapped = await groups.wrap_for_member(group_key, carol.public_key)
    carol_key = await groups.unwrap_group_key(wrapped, carol.private_key)

    assert carol_key == group_key
    assert await groups.decrypt_group_message(old_message, carol_key) == "before carol joined"


@pytest.mark.asyncio
async def test_removed_member_can_still_decrypt(alice, bob):
    """Keys are not rotated, so an ex-member holding the key reads new traffic"""
    group_key = groups.create_group_key()
    records = await groups.distribute("g4", group_key, {"alice": alice.public_key, "bob": bob.public_key})
    bob_record = next(r for r in records if r.member_id == "bob")
    bob_key = await groups.unwrap_group_key(bob_record.encrypted_group_key, bob.private_key)

    # bob is dropped from the membership; the remaining members keep the same key
    remaining = [r for r in records if r.member_id != "bob"]
    alice_key = await groups.unwrap_group_key(remaining[0].encrypted_group_key, alice.private_key)
    after_removal = await groups.encrypt_group_message("sent after bob left", alice_key)

    assert await groups.decrypt_group_message(after_removal, bob_key) == "sent after bob left"


@pytest.mark.asyncio
async def test_wrong_group_key_rejected():
    payload = await groups.encrypt_group_message("secret", groups.create_group_key())

    with pytest.raises(DecryptionError):
        await groups.decrypt_group_message(payload, generate_symmetric_key())


@pytest.mark.asyncio
async def test_tampered_group_message():
    group_key = groups.create_group_key()
    payload = await groups.encrypt_group_message("secret", group_key)
    flipped = bytes([payload.ciphertext[0] ^ 0x01]) + payload.ciphertext[1:]

    with pytest.raises(DecryptionError):
        await groups.decrypt_group_message(EncryptedGroupPayload(flipped, payload.iv), group_key)


@pytest.mark.asyncio
async def test_group_ivs_are_fresh():
    group_key = groups.create_group_key()
    ivs = {(await groups.encrypt_group_message("same", group_key)).iv for _ in range(1000)}

    assert len(ivs) == 1000
    assert all(len(iv) == IV_SIZE for iv in ivs)


@pytest.mark.asyncio
async def test_decrypt_group_result():
    group_key = groups.create_group_key()
    payload = await groups.encrypt_group_message("ok", group_key)

    assert await groups.decrypt_group_result(payload, group_key) == Ok("ok")
    result = await groups.decrypt_group_result(payload, generate_symmetric_key())
    assert isinstance(result, Err)
    assert isinstance(result.error, DecryptionError)


@pytest.mark.asyncio
async def test_wrap_rejects_wrong_size_key(alice):
    with pytest.raises(EncodingError):
        await groups.wrap_for_member(b"short", alice.public_key)


@pytest.mark.asyncio
async def test_encrypt_rejects_wrong_size_key():
    with pytest.raises(EncodingError):
        await groups.encrypt_group_message("x", b"short")


@pytest.mark.asyncio
async def test_record_storage_encoding(alice):
    group_key = groups.create_group_key()
    [record] = await groups.distribute("g5", group_key, {"alice": alice.public_key})
    data = record.to_dict()

    assert data['group_id'] == "g5"
    assert data['member_id'] == "alice"
    assert GroupKeyRecord.from_dict(data) == record

    with pytest.raises(EncodingError):
        GroupKeyRecord.from_dict({**data, 'member_id': ''})
    with pytest.raises(EncodingError):
        GroupKeyRecord.from_dict({**data, 'encrypted_group_key': '***'})


@pytest.mark.asyncio
async def test_group_payload_storage_encoding():
    group_key = groups.create_group_key()
    payload = await groups.encrypt_group_message("row", group_key)
    data = payload.to_dict()

    assert set(data) == {'ciphertext', 'iv'}
    assert EncryptedGroupPayload.from_dict(data) == payload
    with pytest.raises(EncodingError):
        EncryptedGroupPayload.from_dict({'ciphertext': data['ciphertext'], 'iv': 'AAAA'})
