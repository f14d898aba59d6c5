from journey_engine.models.journey import (
    Journey,
    JourneyActivityLog,
    JourneyCampaignMessage,
    JourneyEnrollment,
    JourneyScheduledExecution,
)
