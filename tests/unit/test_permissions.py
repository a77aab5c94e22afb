from masix.config.loader import GroupMode
from masix.services.permissions import PermissionEvaluator, Role, mentions_bot


def _evaluate(sender, *, group_mode=GroupMode.all, is_private=False, mentioned=False, **kwargs):
    params = {"admins": {"1"}, "users": {"2"}, "readonly": {"3"}}
    params.update(kwargs)
    return PermissionEvaluator.evaluate(
        is_private=is_private,
        sender_id=sender,
        chat_id="-100",
        mentioned=mentioned,
        group_mode=group_mode,
        **params,
    )


def test_role_order():
    assert Role.admin.at_least(Role.user)
    assert Role.user.at_least(Role.readonly)
    assert not Role.readonly.at_least(Role.user)
    assert not Role.denied.at_least(Role.readonly)


def test_private_chat_uses_static_lists():
    assert _evaluate("1", is_private=True).role == Role.admin
    assert _evaluate("2", is_private=True).role == Role.user
    assert _evaluate("3", is_private=True).role == Role.readonly
    unknown = _evaluate("9", is_private=True)
    assert unknown.allowed is False
    assert unknown.reason == "not_registered"


def test_dynamic_role_grants_access():
    decision = _evaluate("9", is_private=True, dynamic_role=Role.user)
    assert decision.role == Role.user
    assert decision.can_mutate


def test_allowed_chats_grant_user_only_to_listed_user_ids():
    def evaluate(sender_id):
        return PermissionEvaluator.evaluate(
            is_private=False,
            sender_id=sender_id,
            chat_id="-100",
            mentioned=False,
            group_mode=GroupMode.users_only,
            admins=set(),
            users=set(),
            allowed_chats={"-100", "9"},
        )

    # a listed group id does not make its members users
    stranger = evaluate("999")
    assert stranger.role == Role.denied
    assert stranger.reason == "group_users_only"
    assert evaluate("9").role == Role.user


def test_group_all_lets_everyone_in_but_keeps_readonly():
    assert _evaluate("9").role == Role.user
    assert _evaluate("3").role == Role.readonly
    assert _evaluate("1").role == Role.admin


def test_group_users_only_denies_strangers():
    assert _evaluate("9", group_mode=GroupMode.users_only).allowed is False
    assert _evaluate("2", group_mode=GroupMode.users_only).role == Role.user


def test_group_tag_only_requires_a_mention_from_everyone():
    assert _evaluate("1", group_mode=GroupMode.tag_only).reason == "mention_required"
    assert _evaluate("9", group_mode=GroupMode.tag_only, mentioned=True).role == Role.user
    assert _evaluate("1", group_mode=GroupMode.tag_only, mentioned=True).role == Role.admin


def test_group_users_or_tag():
    assert _evaluate("2", group_mode=GroupMode.users_or_tag).role == Role.user
    assert _evaluate("9", group_mode=GroupMode.users_or_tag, mentioned=True).role == Role.user
    assert _evaluate("9", group_mode=GroupMode.users_or_tag).allowed is False


def test_listen_only_answers_a_mentioning_admin_only():
    admin_tagged = _evaluate("1", group_mode=GroupMode.listen_only, mentioned=True)
    admin_silent = _evaluate("1", group_mode=GroupMode.listen_only)
    user_tagged = _evaluate("2", group_mode=GroupMode.listen_only, mentioned=True)

    assert admin_tagged.role == Role.admin
    assert admin_silent.allowed is False
    assert user_tagged.allowed is False
    assert user_tagged.reason == "listen_only"


def test_mentions_bot_is_case_insensitive():
    assert mentions_bot("hey @MasiX_Bot what's up", "masix_bot")
    assert mentions_bot("ping @masix_bot", "@masix_bot")
    assert not mentions_bot("hello there", "masix_bot")
    assert not mentions_bot("@masix_bot", None)
