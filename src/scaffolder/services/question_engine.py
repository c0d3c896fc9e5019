"""Adaptive clarification questions.

Questions come from per-category templates, are filtered by dependencies and
skip conditions against the answers so far, ordered by priority and capped,
then topped up with follow-ups triggered by specific answers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Sequence

from ..domain.models import AnswerValue, ParsedIntent, Question, QuestionOption

MAX_QUESTIONS = 5

DependencyCondition = Literal["equals", "contains", "not_equals", "exists"]
SkipConditionKind = Literal["if_equals", "if_contains", "if_not_equals"]


@dataclass(frozen=True)
class QuestionDependency:
    question_id: str
    condition: DependencyCondition
    required_answer: Optional[AnswerValue] = None


@dataclass(frozen=True)
class SkipCondition:
    question_id: str
    answer: AnswerValue
    condition: SkipConditionKind


@dataclass(frozen=True)
class QuestionNode:
    id: str
    text: str
    category: str
    priority: int
    options: Sequence[QuestionOption]
    type: str = "multiple"
    default_answer: Optional[AnswerValue] = None
    dependencies: Sequence[QuestionDependency] = field(default_factory=tuple)
    skip_conditions: Sequence[SkipCondition] = field(default_factory=tuple)

    def to_question(self, answered: bool = False) -> Question:
        return Question(
            id=self.id,
            text=self.text,
            type=self.type,
            category=self.category,
            options=list(self.options),
            answered=answered,
        )


@dataclass
class AnswerValidation:
    valid: bool
    error: Optional[str] = None
    warning: Optional[str] = None
    suggestion: Optional[str] = None


def _opts(*items: tuple) -> List[QuestionOption]:
    return [QuestionOption(id=i[0], label=i[1], description=i[2] if len(i) > 2 else None) for i in items]


def _fields_question(text: str, options: List[QuestionOption], default: List[str]) -> QuestionNode:
    return QuestionNode(id="q_fields", text=text, category="data", priority=5, options=options, default_answer=default)


def _visualization_question(text: str, options: List[QuestionOption], default: List[str]) -> QuestionNode:
    return QuestionNode(id="q_visualization", text=text, category="ui", priority=3, options=options, default_answer=default)


def _needs_field(name: str) -> QuestionDependency:
    return QuestionDependency(question_id="q_fields", condition="contains", required_answer=name)


CATEGORY_QUESTIONS: Dict[str, List[QuestionNode]] = {
    "expense": [
        _fields_question(
            "What information would you like to track for each expense?",
            _opts(
                ("amount", "Amount", "How much you spent"),
                ("category", "Category", "Type of expense (Food, Transport, etc.)"),
                ("description", "Description", "What the expense was for"),
                ("date", "Date", "When the expense occurred"),
                ("paymentMethod", "Payment Method", "Cash, card, etc."),
                ("receipt", "Receipt/Notes", "Additional details"),
            ),
            ["amount", "category", "date", "description"],
        ),
        QuestionNode(
            id="q_categories",
            text="Which expense categories would you like to use?",
            category="data",
            priority=4,
            options=_opts(
                ("food", "Food & Dining"),
                ("transport", "Transportation"),
                ("shopping", "Shopping"),
                ("bills", "Bills & Utilities"),
                ("entertainment", "Entertainment"),
                ("health", "Healthcare"),
                ("education", "Education"),
                ("other", "Other"),
            ),
            default_answer=["food", "transport", "shopping", "bills", "entertainment", "other"],
            dependencies=(_needs_field("category"),),
        ),
        _visualization_question(
            "How would you like to see your spending data?",
            _opts(
                ("table", "Data Table", "See all expenses in a list"),
                ("chart_pie", "Pie Chart", "See spending by category"),
                ("chart_bar", "Bar Chart", "Compare categories side by side"),
                ("chart_line", "Trend Line", "See spending over time"),
            ),
            ["table", "chart_pie"],
        ),
    ],
    "habit": [
        _fields_question(
            "What details would you like to track for each habit?",
            _opts(
                ("habitName", "Habit Name", "Name of the habit"),
                ("completed", "Completion Status", "Did you complete it?"),
                ("date", "Date", "When you did the habit"),
                ("streak", "Streak Count", "Days in a row"),
                ("notes", "Notes", "How it went"),
                ("time", "Time of Day", "Morning, afternoon, evening"),
            ),
            ["habitName", "completed", "date", "notes"],
        ),
        QuestionNode(
            id="q_habits",
            text="What habits would you like to track? (You can add more later)",
            category="data",
            priority=4,
            options=_opts(
                ("meditation", "Meditation", "Daily mindfulness"),
                ("exercise", "Exercise", "Physical activity"),
                ("reading", "Reading", "Read for 30 minutes"),
                ("water", "Drink Water", "8 glasses a day"),
                ("sleep", "Sleep Early", "Get to bed on time"),
                ("journal", "Journaling", "Daily reflection"),
                ("custom", "Custom Habit", "I'll add my own"),
            ),
            default_answer=["meditation", "exercise", "reading", "water"],
        ),
        _visualization_question(
            "How would you like to track your progress?",
            _opts(
                ("table", "Habit Log", "See all habit entries"),
                ("chart_bar", "Progress Chart", "Visualize completion rates"),
                ("cards", "Habit Cards", "Quick view of today's habits"),
            ),
            ["table", "chart_bar"],
        ),
    ],
    "project": [
        _fields_question(
            "What information do you need for each task?",
            _opts(
                ("taskName", "Task Name", "What needs to be done"),
                ("status", "Status", "To Do, In Progress, Done"),
                ("priority", "Priority", "High, Medium, Low"),
                ("dueDate", "Due Date", "When it's due"),
                ("assignee", "Assignee", "Who's responsible"),
                ("notes", "Notes", "Additional details"),
                ("tags", "Tags/Labels", "Categorize tasks"),
            ),
            ["taskName", "status", "priority", "dueDate"],
        ),
        QuestionNode(
            id="q_statuses",
            text="What task statuses would you like to use?",
            category="data",
            priority=4,
            options=_opts(
                ("todo", "To Do", "Not started"),
                ("inProgress", "In Progress", "Currently working on"),
                ("review", "In Review", "Waiting for review"),
                ("done", "Done", "Completed"),
                ("blocked", "Blocked", "Stuck on something"),
            ),
            default_answer=["todo", "inProgress", "done"],
            dependencies=(_needs_field("status"),),
        ),
        _visualization_question(
            "How would you like to view your tasks?",
            _opts(
                ("table", "Task List", "Traditional list view"),
                ("cards", "Task Cards", "Card-based view"),
                ("chart_bar", "Progress Chart", "Task completion stats"),
            ),
            ["table", "cards"],
        ),
    ],
    "health": [
        QuestionNode(
            id="q_metrics",
            text="What health metrics would you like to track?",
            category="data",
            priority=5,
            options=_opts(
                ("weight", "Weight", "Body weight tracking"),
                ("sleep", "Sleep", "Hours of sleep"),
                ("water", "Water Intake", "Glasses of water"),
                ("steps", "Steps", "Daily step count"),
                ("bloodPressure", "Blood Pressure", "BP readings"),
                ("heartRate", "Heart Rate", "Resting heart rate"),
                ("mood", "Mood", "Daily mood tracking"),
                ("calories", "Calories", "Calorie intake"),
            ),
            default_answer=["weight", "sleep", "water", "steps"],
        ),
        _visualization_question(
            "How would you like to see your health data?",
            _opts(
                ("table", "Health Log", "See all entries"),
                ("chart_line", "Trend Charts", "See progress over time"),
                ("chart_bar", "Comparison Charts", "Compare metrics"),
            ),
            ["table", "chart_line"],
        ),
    ],
    "time": [
        _fields_question(
            "What would you like to track for each time entry?",
            _opts(
                ("activity", "Activity Name", "What you worked on"),
                ("duration", "Duration", "How long it took"),
                ("category", "Category", "Type of activity"),
                ("date", "Date", "When it happened"),
                ("notes", "Notes", "Additional details"),
                ("project", "Project", "Associated project"),
            ),
            ["activity", "duration", "category", "date"],
        ),
        QuestionNode(
            id="q_categories",
            text="What activity categories would you like?",
            category="data",
            priority=4,
            options=_opts(
                ("work", "Work", "Job-related tasks"),
                ("learning", "Learning", "Education & skills"),
                ("personal", "Personal", "Personal tasks"),
                ("admin", "Admin", "Administrative work"),
                ("meetings", "Meetings", "Calls & meetings"),
                ("other", "Other", "Everything else"),
            ),
            default_answer=["work", "learning", "personal", "admin", "other"],
            dependencies=(_needs_field("category"),),
        ),
        _visualization_question(
            "How would you like to view your time data?",
            _opts(
                ("table", "Time Log", "See all entries"),
                ("chart_pie", "Time Distribution", "See where time goes"),
                ("chart_bar", "Daily Totals", "Hours per day"),
            ),
            ["table", "chart_pie"],
        ),
    ],
    "inventory": [
        _fields_question(
            "What information do you need for each item?",
            _opts(
                ("itemName", "Item Name", "Name of the item"),
                ("quantity", "Quantity", "How many you have"),
                ("category", "Category", "Type of item"),
                ("location", "Location", "Where it's stored"),
                ("value", "Value", "How much it's worth"),
                ("notes", "Notes", "Additional details"),
            ),
            ["itemName", "quantity", "category", "location"],
        ),
        _visualization_question(
            "How would you like to view your inventory?",
            _opts(
                ("table", "Item List", "See all items in a table"),
                ("cards", "Item Cards", "Visual card layout"),
                ("chart_bar", "Inventory Chart", "Quantity by category"),
            ),
            ["table", "cards"],
        ),
    ],
    "custom": [
        _fields_question(
            "What fields would you like for your tracker?",
            _opts(
                ("name", "Name/Title", "Main identifier"),
                ("value", "Value/Amount", "A numeric value"),
                ("category", "Category", "For organization"),
                ("date", "Date", "When it happened"),
                ("notes", "Notes", "Additional details"),
                ("status", "Status", "Current state"),
            ),
            ["name", "value", "date", "notes"],
        ),
        _visualization_question(
            "How would you like to view your data?",
            _opts(
                ("table", "Data Table", "See all entries"),
                ("chart_bar", "Bar Chart", "Compare values"),
                ("cards", "Cards", "Card-based view"),
            ),
            ["table"],
        ),
    ],
}


def _as_list(value: Optional[AnswerValue]) -> List[str]:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


def _has_answer(value: Optional[AnswerValue]) -> bool:
    return bool(_as_list(value)) and any(v != "" for v in _as_list(value))


def dependencies_met(node: QuestionNode, answers: Dict[str, AnswerValue]) -> bool:
    for dep in node.dependencies:
        answer = answers.get(dep.question_id)
        if not _has_answer(answer):
            # not answered yet: only "exists" blocks
            if dep.condition == "exists":
                return False
            continue
        given = _as_list(answer)
        required = _as_list(dep.required_answer)
        if dep.condition == "equals":
            ok = bool(required) and required[0] in given
        elif dep.condition == "contains":
            ok = any(g in required for g in given)
        elif dep.condition == "not_equals":
            ok = not required or required[0] not in given
        else:
            ok = True
        if not ok:
            return False
    return True


def should_skip(node: QuestionNode, answers: Dict[str, AnswerValue]) -> bool:
    for skip in node.skip_conditions:
        answer = answers.get(skip.question_id)
        if not _has_answer(answer):
            continue
        given = _as_list(answer)
        target = _as_list(skip.answer)
        if skip.condition == "if_equals" and target and target[0] in given:
            return True
        if skip.condition == "if_contains" and any(g in target for g in given):
            return True
        if skip.condition == "if_not_equals" and target and target[0] not in given:
            return True
    return False


def follow_up_questions(answers: Dict[str, AnswerValue]) -> List[QuestionNode]:
    follow_ups: List[QuestionNode] = []

    visualization = answers.get("q_visualization")
    if isinstance(visualization, list):
        charts = [v for v in visualization if v.startswith("chart_")]
        if len(charts) > 1 and "q_chart_type" not in answers:
            options = []
            for c in charts:
                kind = c.replace("chart_", "", 1)
                options.append(QuestionOption(id=kind, label=f"{kind[:1].upper()}{kind[1:]} Chart"))
            follow_ups.append(
                QuestionNode(
                    id="q_primary_chart",
                    text="Which chart would you like as your main visualization?",
                    type="single",
                    category="ui",
                    priority=2,
                    options=options,
                )
            )

    fields = answers.get("q_fields")
    if isinstance(fields, list) and "category" in fields and "q_custom_categories" not in answers:
        if not any(_has_answer(answers.get(q)) for q in ("q_categories", "q_statuses", "q_metrics")):
            follow_ups.append(
                QuestionNode(
                    id="q_add_custom_category",
                    text="Would you like to add any custom categories?",
                    type="single",
                    category="data",
                    priority=2,
                    options=_opts(("yes", "Yes", "I'll add custom ones"), ("no", "No", "Defaults are fine")),
                )
            )
    return follow_ups


class QuestionEngine:
    def __init__(self, templates: Optional[Dict[str, List[QuestionNode]]] = None, max_questions: int = MAX_QUESTIONS) -> None:
        self._templates = templates or CATEGORY_QUESTIONS
        self.max_questions = max_questions

    def template_for(self, category: str) -> List[QuestionNode]:
        return list(self._templates.get(category) or self._templates["custom"])

    def node(self, category: str, question_id: str) -> Optional[QuestionNode]:
        for node in self.template_for(category) + follow_up_questions({}):
            if node.id == question_id:
                return node
        return None

    def generate_questions(
        self,
        intent: ParsedIntent,
        previous_answers: Optional[Dict[str, AnswerValue]] = None,
    ) -> List[Question]:
        answers = previous_answers or {}
        nodes = [n for n in self.template_for(intent.category) if dependencies_met(n, answers)]
        nodes = [n for n in nodes if not should_skip(n, answers)]
        nodes.sort(key=lambda n: n.priority, reverse=True)
        nodes = nodes[: self.max_questions]
        nodes = (nodes + follow_up_questions(answers))[: self.max_questions]
        return [n.to_question(answered=_has_answer(answers.get(n.id))) for n in nodes]

    def default_answers(self, category: str) -> Dict[str, AnswerValue]:
        return {n.id: n.default_answer for n in self.template_for(category) if n.default_answer is not None}

    def validate_answer(self, question: Question, answer: AnswerValue) -> AnswerValidation:
        if question.type == "multiple" and (not isinstance(answer, list) or len(answer) == 0):
            return AnswerValidation(
                valid=False,
                error="Please select at least one option",
                suggestion="Choose the options that best fit your needs",
            )
        if question.type == "single" and isinstance(answer, list) and len(answer) != 1:
            return AnswerValidation(valid=False, error="Please select exactly one option")
        if question.id == "q_fields":
            fields = _as_list(answer)
            if len(fields) < 2:
                return AnswerValidation(
                    valid=False,
                    error="Please select at least 2 fields",
                    suggestion="Most trackers need a name/title and at least one data field",
                )
            if "date" not in fields and "dueDate" not in fields:
                return AnswerValidation(valid=True, warning="Consider adding a date field for time-based tracking")
        return AnswerValidation(valid=True)

    @staticmethod
    def next_question(questions: List[Question], answers: Dict[str, AnswerValue]) -> Optional[Question]:
        for q in questions:
            if not _has_answer(answers.get(q.id)):
                return q
        return None

    @staticmethod
    def all_answered(questions: List[Question], answers: Dict[str, AnswerValue]) -> bool:
        return all(_has_answer(answers.get(q.id)) for q in questions)


question_engine = QuestionEngine()


def generate_questions(intent: ParsedIntent, previous_answers: Optional[Dict[str, AnswerValue]] = None) -> List[Question]:
    return question_engine.generate_questions(intent, previous_answers)
