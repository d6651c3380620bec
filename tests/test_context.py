"""Tests for the conversation context."""

from chatbot.conversation.context import ConversationContext


class TestConversationContext:

    def test_copy_is_independent(self):
        context = ConversationContext({"answers": {"q1": "yes"}})

        copied = context.copy()
        copied.get("answers")["q1"] = "no"
        copied.set("lead_id", "lead-1")

        assert context.answers == {"q1": "yes"}
        assert context.lead_id is None

    def test_with_updates_leaves_receiver_untouched(self):
        context = ConversationContext({"selected_date": "2030-01-10"})

        updated = context.with_updates(selected_time_slot="10:00")

        assert updated.selected_time_slot == "10:00"
        assert context.selected_time_slot is None

    def test_round_trip_dict(self):
        context = ConversationContext({"customer_name": "Ana"})
        context.set_waiting_for({"node_id": "ask", "type": "input"})

        restored = ConversationContext.from_dict(context.to_dict())

        assert restored.waiting_for == {"node_id": "ask", "type": "input"}
        assert restored.get("customer_name") == "Ana"

    def test_public_variables_hide_bookkeeping(self):
        context = ConversationContext({"customer_name": "Ana"})
        context.register_visit("start")
        context.increment_input_retry("ask")

        assert context.public_variables() == {"customer_name": "Ana"}

    def test_visit_counting(self):
        context = ConversationContext()

        assert context.register_visit("a") == 1
        assert context.register_visit("a") == 2
        context.reset_visits()
        assert context.register_visit("a") == 1

    def test_input_retries(self):
        context = ConversationContext()

        assert context.increment_input_retry("ask") == 1
        assert context.increment_input_retry("ask") == 2
        context.clear_input_retries("ask")
        assert context.increment_input_retry("ask") == 1

    def test_resolve_dotted_path(self):
        context = ConversationContext({"lead": {"contact": {"email": "ana@example.com"}}, "slots": ["09:00"]})

        assert context.resolve("lead.contact.email") == "ana@example.com"
        assert context.resolve("slots.0") == "09:00"
        assert context.resolve("lead.missing") is None


class TestRendering:

    def test_render_variables_and_extra(self):
        context = ConversationContext({"customer_name": "Ana"})

        rendered = context.render("Hola {{customer_name}}, tu cita es el {{date}}", {"date": "10/01/2030"})

        assert rendered == "Hola Ana, tu cita es el 10/01/2030"

    def test_render_defaults(self):
        context = ConversationContext()

        assert context.render("Hola {{user_name}}") == "Hola Usuario"
        assert context.render("Bienvenido a {{company_name}}") == "Bienvenido a nuestra empresa"

    def test_unknown_placeholder_left_as_written(self):
        context = ConversationContext()

        assert context.render("Código: {{ codigo }}") == "Código: {{ codigo }}"

    def test_render_empty_template(self):
        assert ConversationContext().render(None) == ""
