"""Domain exceptions raised by the billing and guild services."""


class GuildmasterError(Exception):
    """Base service exception."""


class WebhookSignatureError(GuildmasterError):
    """Stripe webhook payload failed signature verification."""


class MissingGuildReference(GuildmasterError):
    """A verified Stripe event could not be mapped to a guild."""


class GuildNotFound(GuildmasterError):
    def __init__(self, guild_id: str):
        super().__init__(f"Guild {guild_id} not found")
        self.guild_id = guild_id


class TrialUnavailable(GuildmasterError):
    """The guild cannot start a Pro trial in its current state."""


class BillingProviderError(GuildmasterError):
    """A call to Stripe failed."""


class IncompleteSubscription(GuildmasterError):
    """A Stripe subscription lacks the id or price a Pro guild must carry."""
