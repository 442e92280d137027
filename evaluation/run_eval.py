import json
import requests
import sys

BASE_URL = 'http://127.0.0.1:5001'

def _outcome(response_json):
    if response_json.get('ok'):
        return 'ok'
    return response_json.get('error', {}).get('code')

def run_eval(base_url=BASE_URL):
    try:
        with open('evaluation/gold_corpus.json', 'r') as f:
            corpus = json.load(f)
    except FileNotFoundError:
        print("Corpus not found.")
        return

    results = []

    print(f"Running evaluation on {len(corpus)} samples...")

    for sample in corpus:
        question = sample['question']
        print(f"Processing: {question}")

        try:
            # Call local API
            res = requests.post(f'{base_url}/sql-generator',
                                json={"question": question, "patient_id": sample.get('patient_id')},
                                timeout=180)
            if res.status_code != 200:
                print(f"Error: {res.text}")
                results.append({"id": sample['id'], "status": "error", "error": res.text})
                continue

            body = res.json()
            outcome = _outcome(body)
            sql = (body.get('sql') or '').lower()

            # Expected terms must appear in the generated SQL (simplified)
            expected_terms = [t.lower() for t in sample.get('expected_terms', [])]
            terms_match = all(t in sql for t in expected_terms) if outcome == 'ok' else None

            results.append({
                "id": sample['id'],
                "status": "success",
                "outcome": outcome,
                "outcome_match": outcome == sample['expected_outcome'],
                "terms_match": terms_match,
                "response": body
            })

        except requests.RequestException as e:
            print(f"Exception: {e}")
            results.append({"id": sample['id'], "status": "exception", "error": str(e)})

    # Summary
    total = len(results)
    outcome_correct = sum(1 for r in results if r.get('outcome_match'))
    print(f"\nResults: {outcome_correct}/{total} expected-outcome accuracy.")

    with open('evaluation/results.json', 'w') as f:
        json.dump(results, f, indent=2)

    return results

if __name__ == '__main__':
    run_eval(sys.argv[1] if len(sys.argv) > 1 else BASE_URL)
